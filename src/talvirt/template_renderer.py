# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound

from talvirt.errors import ConfigError

DEFAULT_TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


class TemplateRenderer:
    # config values arrive already env-expanded by the loader
    def __init__(self, templates_dir: Optional[Path] = None):
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir or DEFAULT_TEMPLATES_DIR)),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        try:
            tmpl = self.env.get_template(template_name)
        except TemplateNotFound as e:
            raise ConfigError(f"Missing template: {template_name}") from e
        return tmpl.render(**context)

    def render_to(self, template_name: str, context: Dict[str, Any], dest: Path) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(self.render(template_name, context), encoding="utf-8")
        return dest
