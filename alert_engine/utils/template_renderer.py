"""
Email template rendering for budget alerts.

Renders one Jinja2 template per alert kind from the bundled templates/
directory (or ALERT_ENGINE_TEMPLATE_DIR):

    budget-exceeded.html.j2
    budget-warning.html.j2
    category-overspend.html.j2
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, TemplateNotFound

from alert_engine.models.alert import AlertKind


TEMPLATE_SUFFIX = ".html.j2"

DEFAULT_TEMPLATE_DIR = Path(__file__).parent.parent / "templates"


class TemplateRenderer:
    """
    Renders alert emails using Jinja2 templates.

    Template names are the AlertKind template names; any other name is
    rejected before Jinja2 is consulted.
    """

    def __init__(self, template_dir: Optional[str] = None):
        """
        Initialize the TemplateRenderer.

        Args:
            template_dir: Path to template directory. If None, uses the
                         templates bundled with the package.
        """
        if not template_dir:
            template_dir = DEFAULT_TEMPLATE_DIR

        if not Path(template_dir).exists():
            raise FileNotFoundError(f"Template directory not found: {template_dir}")

        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=True,
            trim_blocks=True,
            lstrip_blocks=True,
            undefined=StrictUndefined,
        )
        self.env.filters["money"] = _format_money

    def render(self, template: str, data: Dict[str, Any]) -> bytes:
        """
        Render an alert email body.

        Args:
            template: Template name (e.g. 'budget-exceeded')
            data: Rendering context

        Returns:
            UTF-8 encoded HTML

        Raises:
            TemplateNotFound: If the template is unknown
            TemplateError: If rendering fails
        """
        if template not in {kind.template for kind in AlertKind}:
            raise TemplateNotFound(
                f"Unknown alert template '{template}'. "
                f"Available templates: {self._list_available_templates()}"
            )
        try:
            jinja_template = self.env.get_template(template + TEMPLATE_SUFFIX)
            return jinja_template.render(**data).encode("utf-8")
        except TemplateNotFound:
            raise TemplateNotFound(
                f"Template '{template}' not found. "
                f"Available templates: {self._list_available_templates()}"
            )
        except TemplateError as e:
            raise TemplateError(f"Error rendering template '{template}': {e}")

    def _list_available_templates(self) -> List[str]:
        template_dir = Path(self.env.loader.searchpath[0])
        return sorted(
            f.name[: -len(TEMPLATE_SUFFIX)]
            for f in template_dir.glob("*" + TEMPLATE_SUFFIX)
            if f.is_file()
        )


def _format_money(value: Any, currency: str = "$") -> str:
    if value is None:
        return f"{currency}0.00"
    return f"{currency}{float(value):,.2f}"
