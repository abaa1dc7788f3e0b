"""Prompt templates for the agent loop, stored as .txt files in templates/."""

from __future__ import annotations

from pathlib import Path

from tiny_agent.errors import ConfigError

TEMPLATES_DIR = Path(__file__).parent / "templates"

_cache: dict[str, str] = {}


def load_prompt(name: str) -> str:
    """Return the raw template ``name`` (no extension) with {placeholders} intact."""
    if name not in _cache:
        path = TEMPLATES_DIR / f"{name}.txt"
        if not path.is_file():
            raise ConfigError(f"prompt template '{name}' not found in {TEMPLATES_DIR}")
        _cache[name] = path.read_text(encoding="utf-8").strip()
    return _cache[name]


def render_prompt(name: str, **values: object) -> str:
    return load_prompt(name).format(**values)


def available_prompts() -> list[str]:
    return sorted(p.stem for p in TEMPLATES_DIR.glob("*.txt"))
