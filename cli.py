from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _report(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="devenv orchestrator CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("health", help="Daemon and event monitor status")
    sub.add_parser("resources", help="List managed containers, volumes and networks")
    sub.add_parser("stats", help="CPU / memory of running managed containers")

    s_state = sub.add_parser("state", help="Container state for an owner")
    s_state.add_argument("--kind", default="project-container")
    s_state.add_argument("owner")

    for action in ("start", "stop", "restart", "remove"):
        s = sub.add_parser(action, help=f"{action.capitalize()} a managed container")
        s.add_argument("container_id")
        if action == "remove":
            s.add_argument("--volumes", action="store_true", help="Also remove anonymous volumes")

    s_proj = sub.add_parser("projects", help="Replace the proxy routing registry from a JSON file")
    s_proj.add_argument("file", help='JSON list: [{"id":..., "name":..., "domain":..., "forwarded_port":8443}]')

    sub.add_parser("reconcile", help="Push the proxy configuration now")
    sub.add_parser("bootstrap", help="Bootstrap the proxy and print its root certificate")

    s_copy = sub.add_parser("copy", help="Initial copy of a host folder into a project volume")
    s_copy.add_argument("project_id")
    s_copy.add_argument("--host-path", required=True)
    s_copy.add_argument("--volume", required=True)

    s_sync = sub.add_parser("sync", help="Sync a host folder with a project volume")
    s_sync.add_argument("project_id")
    s_sync.add_argument("--host-path", required=True)
    s_sync.add_argument("--volume", required=True)
    s_sync.add_argument("--direction", choices=["to-volume", "from-volume"], default="to-volume")
    s_sync.add_argument("--include-node-modules", action="store_true")
    s_sync.add_argument("--include-vendor", action="store_true")
    s_sync.add_argument("--wait", action="store_true", help="Block until the sync finished")

    s_cancel = sub.add_parser("cancel", help="Cancel a queued or running transfer")
    s_cancel.add_argument("project_id")

    sub.add_parser("sync-status", help="Sync queue and transfer progress")

    s_ev = sub.add_parser("events", help="Show diagnostic log")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--owner")

    s_rec = sub.add_parser("recent", help="Recent container lifecycle events")
    s_rec.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd in ("health", "resources", "stats"):
        return _report(requests.get(f"{base}/{args.cmd}", timeout=10))

    if args.cmd == "state":
        return _report(requests.get(f"{base}/containers/{args.kind}/{args.owner}", timeout=10))

    if args.cmd in ("start", "stop", "restart"):
        return _report(requests.post(f"{base}/containers/{args.container_id}/{args.cmd}", timeout=60))

    if args.cmd == "remove":
        r = requests.delete(
            f"{base}/containers/{args.container_id}", params={"remove_volumes": args.volumes}, timeout=60
        )
        return _report(r)

    if args.cmd == "projects":
        with open(args.file, encoding="utf-8") as f:
            projects = json.load(f)
        return _report(requests.put(f"{base}/projects", json={"projects": projects}, timeout=10))

    if args.cmd == "reconcile":
        return _report(requests.post(f"{base}/proxy/reconcile", timeout=60))

    if args.cmd == "bootstrap":
        return _report(requests.post(f"{base}/proxy/bootstrap", timeout=120))

    if args.cmd == "copy":
        payload = {"host_path": args.host_path, "volume_name": args.volume}
        return _report(requests.post(f"{base}/projects/{args.project_id}/copy", json=payload, timeout=30))

    if args.cmd == "sync":
        payload = {
            "direction": args.direction,
            "host_path": args.host_path,
            "volume_name": args.volume,
            "include_node_modules": args.include_node_modules,
            "include_vendor": args.include_vendor,
            "wait": args.wait,
        }
        # a waited sync can take up to the server's sync timeout
        timeout = None if args.wait else 30
        return _report(requests.post(f"{base}/projects/{args.project_id}/sync", json=payload, timeout=timeout))

    if args.cmd == "cancel":
        return _report(requests.delete(f"{base}/projects/{args.project_id}/sync", timeout=30))

    if args.cmd == "sync-status":
        return _report(requests.get(f"{base}/sync/status", timeout=10))

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.owner:
            params["owner"] = args.owner
        return _report(requests.get(f"{base}/events", params=params, timeout=10))

    if args.cmd == "recent":
        return _report(requests.get(f"{base}/events/recent", params={"limit": args.limit}, timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
