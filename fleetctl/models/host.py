from typing import Optional
from datetime import datetime
from sqlalchemy import Column, JSON
from sqlmodel import Field, SQLModel


class Credential(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    kind: str = Field(default="ssh_key")  # ssh_key, password
    username: Optional[str] = Field(default=None)
    secret: str = Field(default="")  # Fernet token, see core.security


class Host(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)  # Friendly name
    hostname: str = Field(index=True)  # IP or FQDN
    port: int = Field(default=22)
    ssh_user: str = Field(default="root")
    is_local: bool = Field(default=False)
    enabled: bool = Field(default=True)
    os_family: Optional[str] = Field(default=None)  # debian, ubuntu, fedora...
    package_manager: Optional[str] = Field(default=None)
    capabilities: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    credential_id: Optional[int] = Field(default=None, foreign_key="credential.id")
    status: str = Field(default="unknown")  # unknown, reachable, unreachable
    last_seen_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def display_address(self) -> str:
        if self.is_local:
            return "localhost"
        if self.port != 22:
            return f"{self.ssh_user}@{self.hostname}:{self.port}"
        return f"{self.ssh_user}@{self.hostname}"
