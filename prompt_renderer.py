# prompt_renderer.py
"""Template registry for LLM prompts, backed by Jinja2.

Templates live under ``prompts/<category>/<name>.j2``. Jinja2 handles any
structural logic a template needs; ``{variable}`` placeholders are left in the
output for ``AIService.build_prompt`` to fill after sanitizing the values.
"""

from collections.abc import Mapping
from pathlib import Path

import structlog
from jinja2 import Environment, FileSystemLoader, TemplateNotFound

logger = structlog.get_logger(__name__)

PROMPTS_PATH = Path(__file__).parent / "prompts"
_env = Environment(
    loader=FileSystemLoader(PROMPTS_PATH),
    autoescape=False,
    keep_trailing_newline=False,
)


class PromptTemplateError(LookupError):
    """Raised when a category/name pair has no template."""


def template_path(category: str, name: str) -> str:
    return f"{category}/{name}.j2"


def render_template(
    category: str, name: str, variables: Mapping[str, str] | None = None
) -> str:
    """Render the ``category``/``name`` template with ``variables`` as context."""
    try:
        template = _env.get_template(template_path(category, name))
    except TemplateNotFound as exc:
        logger.error("Prompt template not found", category=category, name=name)
        raise PromptTemplateError(
            f"Prompt template not found: {category}.{name}"
        ) from exc
    return template.render(**dict(variables or {}))


def list_templates(category: str | None = None) -> list[str]:
    names = _env.list_templates(extensions=["j2"])
    if category:
        names = [n for n in names if n.startswith(f"{category}/")]
    return sorted(names)
