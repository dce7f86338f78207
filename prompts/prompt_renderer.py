# prompts/prompt_renderer.py
"""Jinja2 templates for chapter drafting, summaries and evaluation.

Templates live in per-purpose folders next to this module (``orchestration/``,
``ai_models/``). Rendering is strict: a variable missing from the context is an
error, never an empty string in the prompt. Request text reaches these
templates only after HTTP-boundary sanitization, so autoescaping stays off.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

PROMPTS_PATH = Path(__file__).parent

_env = Environment(
    loader=FileSystemLoader(PROMPTS_PATH),
    autoescape=False,
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_prompt(template_name: str, context: dict[str, Any]) -> str:
    """Render ``template_name`` (relative to this package) with ``context``.

    Raises ``jinja2.UndefinedError`` when the template uses a name the context lacks.
    """
    return _env.get_template(template_name).render(**context).strip()


@lru_cache(maxsize=8)
def get_system_prompt(group: str) -> str:
    path = PROMPTS_PATH / group / "system.md"
    return path.read_text(encoding="utf-8").strip() if path.exists() else ""
