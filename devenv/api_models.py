from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class PortMappingModel(BaseModel):
    host_port: int = Field(..., ge=1, le=65535, description="Desired host port (remapped if taken)")
    container_port: int = Field(..., ge=1, le=65535)


class CreateProjectContainerRequest(BaseModel):
    project_name: str = Field(..., min_length=1)
    image: str = Field(..., description="Docker image (name:tag)")
    name: str | None = Field(None, description="Container name; the runtime picks one if omitted")
    command: list[str] | None = None
    environment: dict[str, str] = Field(default_factory=dict)
    ports: list[PortMappingModel] = Field(default_factory=list)
    volume_bindings: list[str] = Field(default_factory=list, description='e.g. ["my-volume:/var/www/html"]')
    user: str | None = None
    start: bool = Field(True, description="Start the container right after creating it")


class ProjectModel(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    domain: str = Field(..., description="Host name the proxy serves, e.g. myapp.local")
    forwarded_port: int = Field(8443, ge=1, le=65535, description="HTTPS port inside the project container")


class ProjectsRequest(BaseModel):
    projects: list[ProjectModel] = Field(default_factory=list)


class CopyRequest(BaseModel):
    host_path: str
    volume_name: str


class SyncRequest(BaseModel):
    direction: Literal["to-volume", "from-volume"]
    host_path: str
    volume_name: str
    include_node_modules: bool = False
    include_vendor: bool = False
    wait: bool = Field(False, description="Block until the sync finished")
