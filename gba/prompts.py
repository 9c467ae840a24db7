"""Prompt templates for phase sessions, rendered with jinja2."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path

import jinja2

from .errors import RenderError, TemplateNotFoundError

logger = logging.getLogger("gba")

DEFAULT_TEMPLATE = "phase.md"

PHASE_PROMPT_TEMPLATE = """\
You are executing one phase of a planned feature. Follow these instructions precisely.

## Your Task

Execute phase '{{ phase_name }}' ({{ phase_number }}/{{ phase_count }}) for feature \
{{ feature_id }}_{{ feature_slug }}.

{{ phase_description }}

## Context

- Repository: `{{ repo_path }}`
- Design spec: `.gba/features/{{ feature_id }}_{{ feature_slug }}/specs/design.md`
- Verification criteria: `.gba/features/{{ feature_id }}_{{ feature_slug }}/specs/verification.md`
{% if previous_phase %}
## Previous Phase: {{ previous_phase }}

{{ previous_output | indent_block(2) }}
{% endif %}
## Protocol

1. Read the design spec and verification criteria before changing anything.
2. Do only the work this phase describes. Do not start the next phase.
3. Commit your work with message: `{{ feature_slug }}: {{ phase_name }}`
4. Finish with a short summary of what this phase produced.
"""

BUILTIN_TEMPLATES: dict[str, str] = {
    DEFAULT_TEMPLATE: PHASE_PROMPT_TEMPLATE,
}


def slugify(value: str) -> str:
    return re.sub(r"[^0-9a-z]+", "-", str(value).lower()).strip("-")


def indent_block(value: str, spaces: int = 2) -> str:
    """Indent every non-empty line, including the first."""
    pad = " " * spaces
    return "\n".join(pad + line if line.strip() else line for line in str(value).splitlines())


class PromptManager:
    """Loads, renders and caches prompt templates.

    Templates in the project's prompts directory shadow the built-in ones.
    Rendering is pure, so results are cached by template id and context.
    """

    def __init__(self, template_dir: Path | None = None):
        self.template_dir = template_dir
        loaders: list[jinja2.BaseLoader] = []
        if template_dir is not None and template_dir.is_dir():
            loaders.append(jinja2.FileSystemLoader(str(template_dir)))
        loaders.append(jinja2.DictLoader(BUILTIN_TEMPLATES))
        self.env = jinja2.Environment(
            loader=jinja2.ChoiceLoader(loaders),
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self.env.filters["slugify"] = slugify
        self.env.filters["indent_block"] = indent_block
        self._cache: dict[tuple, str] = {}

    def render(self, template_id: str, context: Mapping[str, str]) -> str:
        cache_key = (template_id, tuple(sorted((k, str(v)) for k, v in context.items())))
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Prompt cache hit for {template_id}")
            return cached

        try:
            template = self.env.get_template(template_id)
        except jinja2.TemplateNotFound:
            raise TemplateNotFoundError(f"Template not found: {template_id}") from None
        except jinja2.TemplateSyntaxError as e:
            raise RenderError(f"Template syntax error in {template_id}: {e}") from e

        try:
            rendered = template.render(**context)
        except jinja2.TemplateError as e:
            raise RenderError(f"Failed to render {template_id}: {e}") from e

        self._cache[cache_key] = rendered
        return rendered

    def list_templates(self) -> list[str]:
        return sorted(set(self.env.list_templates()))

    def validate(self, template_id: str) -> None:
        """Parse a template without rendering it."""
        try:
            self.env.get_template(template_id)
        except jinja2.TemplateNotFound:
            raise TemplateNotFoundError(f"Template not found: {template_id}") from None
        except jinja2.TemplateSyntaxError as e:
            raise RenderError(f"Template syntax error in {template_id}: {e}") from e

    def clear_cache(self) -> None:
        self._cache.clear()
