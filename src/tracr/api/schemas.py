# API request/response models shared by the route modules.

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# ── Agents ───────────────────────────────────────────────────────────


class RegisterRequest(BaseModel):
    """Agent registration request."""
    hostname: str = Field(..., min_length=1, max_length=255, description="Device hostname")
    os_version: Optional[str] = Field(None, max_length=255)
    agent_version: Optional[str] = Field(None, max_length=50)


class RegisterResponse(BaseModel):
    device_id: str
    device_token: str


class Identity(BaseModel):
    hostname: str = Field(..., min_length=1, max_length=255)
    domain: Optional[str] = Field(None, max_length=255)
    last_interactive_user: Optional[str] = Field(None, max_length=255)
    boot_time: Optional[datetime] = None


class OperatingSystem(BaseModel):
    caption: str = Field(..., min_length=1, max_length=255)
    version: str = Field(..., min_length=1, max_length=100)
    build_number: Optional[str] = Field(None, max_length=50)
    install_date: Optional[datetime] = None


class Hardware(BaseModel):
    manufacturer: Optional[str] = Field(None, max_length=255)
    model: Optional[str] = Field(None, max_length=255)
    serial_number: Optional[str] = Field(None, max_length=255)


class Performance(BaseModel):
    cpu_percent: float = Field(..., ge=0, le=100)
    memory_used_bytes: int = Field(..., ge=0)
    memory_total_bytes: int = Field(..., ge=0)


class Volume(BaseModel):
    name: str = Field(..., min_length=1, max_length=10)
    filesystem: Optional[str] = Field(None, max_length=50)
    total_bytes: int = Field(..., ge=0)
    free_bytes: int = Field(..., ge=0)
    used_bytes: Optional[int] = Field(None, ge=0)


class SoftwareEntry(BaseModel):
    name: str = Field(..., min_length=1, max_length=500)
    version: Optional[str] = Field(None, max_length=100)
    publisher: Optional[str] = Field(None, max_length=255)
    install_date: Optional[str] = Field(None, max_length=50)
    size_kb: Optional[int] = Field(None, ge=0)


class InventorySubmission(BaseModel):
    """Full inventory report from an agent."""
    identity: Identity
    os: OperatingSystem
    hardware: Hardware = Field(default_factory=Hardware)
    performance: Performance
    volumes: List[Volume] = Field(default_factory=list)
    software: List[SoftwareEntry] = Field(default_factory=list)
    collected_at: datetime
    agent_version: Optional[str] = Field(None, max_length=50)


class CommandReport(BaseModel):
    """Outcome an agent reports for an executed command."""
    success: bool
    message: Optional[str] = Field(None, max_length=2000)
    error: Optional[str] = Field(None, max_length=2000)


# ── Dashboard ────────────────────────────────────────────────────────


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=1024)


class UserOut(BaseModel):
    id: str
    username: str
    role: str
    created_at: str
    updated_at: str


class LoginResponse(BaseModel):
    token: str
    expires_at: str
    user: UserOut


class CreateUserRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    password: str = Field(..., min_length=8, max_length=1024)
    role: Literal["viewer", "admin"] = "viewer"


class UpdateUserRequest(BaseModel):
    password: Optional[str] = Field(None, min_length=8, max_length=1024)
    role: Optional[Literal["viewer", "admin"]] = None


class CreateCommandRequest(BaseModel):
    command_type: str = Field(..., min_length=1, max_length=50)
    payload: Dict[str, Any] = Field(default_factory=dict)
