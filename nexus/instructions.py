"""Load and render LLM instruction templates from disk.

Personal overrides in ``~/.nexus/instructions/`` take precedence over the
defaults shipped in the package's ``instructions/`` folder.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

from nexus.machines import MachineDescriptor


_PERSONAL_DIR = Path("~/.nexus/instructions").expanduser()
SYSTEM_PROMPT_TEMPLATE = "system_prompt.md"


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render instruction templates with personal-override support."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("NEXUS_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "instructions").resolve()

    def _path(self, name: str) -> Path:
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def load(self, name: str) -> str:
        """Load instruction template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(f"Instruction template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Render template with simple ``str.format`` placeholder substitution."""
        template = self.load(name)
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return template.format_map(_SafeFormatDict(values))


def format_machine_table(machines: list[MachineDescriptor]) -> str:
    """One line per machine, as shown to the model."""
    lines = []
    for machine in machines:
        state = "enabled" if machine.enabled else "disabled"
        line = f"- {machine.name}: role={machine.role.value}, os={machine.os}, {state}"
        if machine.notes:
            line += f" ({machine.notes})"
        lines.append(line)
    return "\n".join(lines) or "- (no machines registered)"


def render_system_prompt(loader: InstructionLoader, machines: list[MachineDescriptor]) -> str:
    commander = next((m.name for m in machines if m.is_commander), "Commander")
    return loader.render(
        SYSTEM_PROMPT_TEMPLATE,
        commander=commander,
        machines=format_machine_table(machines),
    )
