"""devenv: container orchestration core for isolated per-project development environments.

 - label-addressed containers, volumes and networks
 - host-port conflict resolution
 - helper-container bulk copy / sync between host folders and volumes
 - bounded, per-project sync queue
 - reverse-proxy (Caddy) config reconciliation
 - container event monitoring with reconnect
"""
