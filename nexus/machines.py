"""Machine registry: the fixed table of hosts a command may target."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator

from nexus.exceptions import UnknownMachineError


def validate_host(host: str) -> str:
    """Strip a host and reject values ssh would parse as something else.

    The host sits in the ssh argv, so a leading ``-`` would be read as an
    option and embedded whitespace would split it.
    """
    cleaned = host.strip()
    if cleaned.startswith("-"):
        raise ValueError(f"Host must not start with '-': {cleaned}")
    if any(ch.isspace() for ch in cleaned):
        raise ValueError(f"Host must not contain whitespace: {cleaned}")
    return cleaned


class MachineRole(str, Enum):
    """Role of a machine in the fleet."""

    COMMANDER = "Commander"
    REMOTE = "Remote"


class MachineDescriptor(BaseModel):
    """One addressable machine."""

    name: str
    host: str = ""
    role: MachineRole = MachineRole.REMOTE
    enabled: bool = True
    os: str = "linux"
    notes: str = ""
    info_ref: str | None = Field(default=None, description="External info document reference")

    @field_validator("host")
    @classmethod
    def _check_host(cls, value: str) -> str:
        return validate_host(value)

    @property
    def is_commander(self) -> bool:
        return self.role == MachineRole.COMMANDER

    @property
    def is_targetable(self) -> bool:
        """Whether commands may be sent to this machine over ssh."""
        return self.enabled and not self.is_commander and bool(self.host.strip())


def default_machines() -> list[MachineDescriptor]:
    """Built-in machine table used when config does not provide one."""
    return [
        MachineDescriptor(name="OMEN", host="localhost", role=MachineRole.COMMANDER, os="windows"),
        MachineDescriptor(name="SIGMA", host="sigma", os="windows"),
        MachineDescriptor(name="Precision", host="precision", os="linux"),
    ]


class MachineRegistry:
    """Ordered name -> descriptor table.

    Descriptors are replaced, never mutated in place, so snapshots handed
    out by :meth:`list` stay consistent after an update.
    """

    def __init__(self, machines: list[MachineDescriptor] | None = None):
        self._machines: dict[str, MachineDescriptor] = {}
        for machine in machines if machines is not None else default_machines():
            if machine.name in self._machines:
                raise ValueError(f"Duplicate machine name: {machine.name}")
            self._machines[machine.name] = machine

    def get(self, name: str) -> MachineDescriptor:
        machine = self._machines.get(name)
        if machine is None:
            raise UnknownMachineError(name)
        return machine

    def has(self, name: str) -> bool:
        return name in self._machines

    def list(self) -> list[MachineDescriptor]:
        return list(self._machines.values())

    def targetable(self) -> list[MachineDescriptor]:
        """Enabled, non-Commander machines in registry order."""
        return [m for m in self._machines.values() if m.is_targetable]

    def update(
        self,
        name: str,
        host: str | None = None,
        enabled: bool | None = None,
    ) -> MachineDescriptor:
        """Update host and/or enabled flag of a machine.

        Args:
            name: Machine name
            host: New host (``user@host`` or ssh alias), unchanged when None
            enabled: New enabled flag, unchanged when None

        Returns:
            The updated descriptor

        Raises:
            ValueError: If the host is empty or not a plain ssh destination
        """
        current = self.get(name)
        changes: dict[str, object] = {}
        if host is not None:
            cleaned = host.strip()
            if not cleaned:
                raise ValueError("Host must not be empty")
            changes["host"] = validate_host(cleaned)
        if enabled is not None:
            changes["enabled"] = bool(enabled)
        updated = current.model_copy(update=changes)
        self._machines[name] = updated
        return updated

    def copy(self) -> "MachineRegistry":
        """Independent registry holding the same (immutable) descriptors."""
        return MachineRegistry(self.list())
