"""
Report rendering for aggregated fees.

Renders an ``AggregatedFee`` through a Jinja2 template, dumps it as JSON, and
prints a color-coded console summary using the Rich library.
"""

from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import jinja2
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .aggregator import AggregatedFee, FeeWarning
from .error_handling import ErrorCategory, TemplateError, get_error_handler
from .structured_logging import get_report_logger

DEFAULT_TEMPLATE = """\
OpenFare fee report for {{ root }}
Total: {{ total }}{{ " " ~ currency if currency else "" }}

{% if rows %}
Fees:
{% for row in rows %}
  {{ row.name }} {{ row.version }}: {{ row.amount }}
{% for recipient in row.recipients %}
    -> {{ recipient.name }} ({{ recipient.share }}): {{ recipient.amount }}
{% endfor %}
{% endfor %}

{% endif %}
{% if recipients %}
Recipients:
{% for recipient in recipients %}
  {{ recipient.name }}: {{ recipient.amount }}
{% endfor %}

{% endif %}
{% if no_fee %}
No fee declared:
{% for package in no_fee %}
  {{ package.name }} {{ package.version }}
{% endfor %}

{% endif %}
{% if warnings %}
Warnings:
{% for warning in warnings %}
  {{ warning.text }}{{ " (" ~ warning.detail ~ ")" if warning.detail else "" }}
{% endfor %}
{% endif %}
"""


def _amount(value: Decimal) -> str:
    return str(value)


def build_context(aggregated: AggregatedFee) -> Dict[str, Any]:
    """Build the template fields of an aggregated fee."""
    rows = []
    recipient_totals: Dict[str, Decimal] = {}

    for row in aggregated.rows:
        recipients = []
        for recipient, amount in row.recipient_amounts():
            recipients.append(
                {
                    "name": recipient.name,
                    "share": _amount(recipient.share),
                    "amount": _amount(amount),
                }
            )
            recipient_totals[recipient.name] = (
                recipient_totals.get(recipient.name, Decimal("0")) + amount
            )
        rows.append(
            {
                "name": row.identity.name,
                "version": row.identity.version,
                "source": row.identity.source,
                "amount": _amount(row.amount),
                "recipients": recipients,
            }
        )

    return {
        "root": str(aggregated.root),
        "total": _amount(aggregated.total),
        "currency": aggregated.currency,
        "rows": rows,
        "recipients": [
            {"name": name, "amount": _amount(amount)}
            for name, amount in recipient_totals.items()
        ],
        "no_fee": [
            {"name": identity.name, "version": identity.version}
            for identity in aggregated.no_fee
        ],
        "warnings": [
            {
                "name": warning.identity.name,
                "version": warning.identity.version,
                "message": warning.message,
                "detail": warning.detail,
                "text": str(warning),
            }
            for warning in aggregated.warnings
        ],
    }


def _environment() -> jinja2.Environment:
    # Block tags on their own line leave no blank lines behind
    return jinja2.Environment(
        undefined=jinja2.StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def render(aggregated: AggregatedFee, template: str) -> str:
    """
    Render an aggregated fee through a Jinja2 template.

    Args:
        aggregated: The aggregated fee; it is never modified
        template: Template source text

    Returns:
        The rendered report

    Raises:
        TemplateError: If the template is invalid, references a field the
            aggregated fee does not provide, or fails while rendering
    """
    context = build_context(aggregated)
    try:
        compiled = _environment().from_string(template)
        report = compiled.render(**context)
    except jinja2.TemplateSyntaxError as e:
        raise _template_failure(f"Template syntax error on line {e.lineno}: {e.message}", e) from e
    except jinja2.UndefinedError as e:
        raise _template_failure(f"Template references an undefined field: {e.message}", e) from e
    except jinja2.TemplateError as e:
        raise _template_failure(f"Template rendering failed: {type(e).__name__}: {e}", e) from e
    except (TypeError, ValueError, ArithmeticError) as e:
        # Filters and expressions applied to the wrong field type
        raise _template_failure(f"Template rendering failed: {e}", e) from e

    get_report_logger().debug("report_rendered", root=str(aggregated.root), length=len(report))
    return report


def _template_failure(message: str, exception: Exception) -> TemplateError:
    get_error_handler().error(
        ErrorCategory.TEMPLATE, message, "reporting", "render", exception=exception
    )
    return TemplateError(message)


def load_template(path: Union[str, Path, None]) -> str:
    """
    Read a template file, or return the default template when no path is given.

    Raises:
        TemplateError: If the file cannot be read
    """
    if path is None:
        return DEFAULT_TEMPLATE
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise TemplateError(f"Cannot read template {path}: {e}") from e


def aggregated_to_dict(aggregated: AggregatedFee) -> Dict[str, Any]:
    """Raw, template-independent representation used for JSON output."""
    return {
        "root": aggregated.root.to_dict(),
        "currency": aggregated.currency,
        "total": _amount(aggregated.total),
        "rows": [
            {
                "package": row.identity.to_dict(),
                "amount": _amount(row.amount),
                "profile": row.profile.to_dict(),
            }
            for row in aggregated.rows
        ],
        "no_fee": [identity.to_dict() for identity in aggregated.no_fee],
        "warnings": [
            {
                "package": warning.identity.to_dict(),
                "message": warning.message,
                "detail": warning.detail,
            }
            for warning in aggregated.warnings
        ],
    }


class ReportPrinter:
    """Prints aggregated fees as a console summary."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def print_aggregated(self, aggregated: AggregatedFee) -> None:
        """
        Print a summary of one aggregated fee.

        Args:
            aggregated: The aggregated fee to display
        """
        self._print_header(aggregated)

        if aggregated.rows:
            self._print_rows(aggregated)
        else:
            self.console.print("No fees declared for this dependency graph.", style="green")

        if aggregated.no_fee:
            self.console.print(
                f"{len(aggregated.no_fee)} package(s) declare no fee", style="dim"
            )

        if aggregated.warnings:
            self.print_warnings(aggregated.warnings)

    def _print_header(self, aggregated: AggregatedFee) -> None:
        total = _amount(aggregated.total)
        if aggregated.currency:
            total = f"{total} {aggregated.currency}"
        self.console.print(
            Panel(
                f"Total: [bold]{total}[/bold]",
                title=f"[bold blue]OpenFare fees for {aggregated.root}[/bold blue]",
                border_style="blue",
            )
        )

    def _print_rows(self, aggregated: AggregatedFee) -> None:
        table = Table(title="Fees", box=box.ROUNDED, title_style="bold cyan")
        table.add_column("Package", style="bold")
        table.add_column("Version")
        table.add_column("Amount", justify="right")
        table.add_column("Recipients")

        for row in aggregated.rows:
            recipients = ", ".join(
                f"{recipient.name} ({_amount(amount)})"
                for recipient, amount in row.recipient_amounts()
            )
            table.add_row(
                row.identity.name,
                row.identity.version,
                f"{_amount(row.amount)} {row.profile.currency}",
                recipients or "[dim]-[/dim]",
            )

        self.console.print(table)

    def print_warnings(self, warnings: Sequence[FeeWarning]) -> None:
        """Print warnings in yellow, one per line, with the reason when known."""
        self.console.print(f"⚠️  {len(warnings)} warning(s):", style="yellow")
        for warning in warnings:
            line = f"  • {warning}"
            if warning.detail:
                line += f" ({warning.detail})"
            self.console.print(line, style="yellow", markup=False)
