"""
Report rendering tests.
"""

import io
from decimal import Decimal

import pytest
from rich.console import Console

from openfare_rs.aggregator import AggregatedFee, FeeRow, FeeWarning
from openfare_rs.error_handling import TemplateError
from openfare_rs.package import FeeProfile, PackageIdentity
from openfare_rs.reporting import (
    DEFAULT_TEMPLATE,
    ReportPrinter,
    aggregated_to_dict,
    build_context,
    load_template,
    render,
)

CRATES_IO = "registry+https://github.com/rust-lang/crates.io-index"


@pytest.fixture
def aggregated():
    root = PackageIdentity("app", "0.1.0")
    serde = PackageIdentity("serde", "1.0.0", CRATES_IO)
    tokio = PackageIdentity("tokio", "1.32.0", CRATES_IO)
    log = PackageIdentity("log", "0.4.20", CRATES_IO)
    rand = PackageIdentity("rand", "0.8.5", CRATES_IO)

    serde_profile = FeeProfile.from_dict(
        {
            "currency": "USD",
            "per_use_fee": "1.00",
            "recipients": [{"name": "alice", "share": "0.5"}, {"name": "bob", "share": "0.5"}],
        }
    )
    tokio_profile = FeeProfile.from_dict(
        {
            "currency": "USD",
            "one_time_fee": "2.00",
            "recipients": [{"name": "alice", "share": "1"}],
        }
    )
    return AggregatedFee(
        root=root,
        currency="USD",
        total=Decimal("3.00"),
        rows=(
            FeeRow(serde, serde_profile, serde_profile.fee),
            FeeRow(tokio, tokio_profile, tokio_profile.fee),
        ),
        no_fee=(root, log),
        warnings=(FeeWarning(rand, "fetch failed", "HTTP 503 (after 4 attempts)"),),
    )


class TestRender:
    """Test template rendering."""

    def test_default_template(self, aggregated):
        report = render(aggregated, DEFAULT_TEMPLATE)
        lines = report.splitlines()

        assert lines[0] == "OpenFare fee report for app@0.1.0"
        assert lines[1] == "Total: 3.00 USD"
        assert "  serde 1.0.0: 1.00" in lines
        assert "    -> alice (0.5): 0.500" in lines
        assert "  tokio 1.32.0: 2.00" in lines
        assert "  alice: 2.500" in lines
        assert "  bob: 0.500" in lines
        assert "  log 0.4.20" in lines
        assert "  rand: fetch failed (HTTP 503 (after 4 attempts))" in lines

    def test_custom_template(self, aggregated):
        template = "{{ root }}={{ total }} {{ currency }}|{% for row in rows %}{{ row.name }}@{{ row.source }};{% endfor %}"
        assert render(aggregated, template) == (
            f"app@0.1.0=3.00 USD|serde@{CRATES_IO};tokio@{CRATES_IO};"
        )

    def test_undefined_field_is_an_error(self, aggregated):
        with pytest.raises(TemplateError, match="undefined"):
            render(aggregated, "{{ grand_total }}")

    def test_undefined_attribute_is_an_error(self, aggregated):
        with pytest.raises(TemplateError):
            render(aggregated, "{% for row in rows %}{{ row.license }}{% endfor %}")

    def test_syntax_error(self, aggregated):
        with pytest.raises(TemplateError, match="syntax"):
            render(aggregated, "{% for row in rows %}")

    def test_custom_template_can_show_warning_reasons(self, aggregated):
        template = "{% for w in warnings %}{{ w.name }}={{ w.detail }}{% endfor %}"
        assert render(aggregated, template) == "rand=HTTP 503 (after 4 attempts)"

    @pytest.mark.parametrize(
        "template",
        [
            "{{ total|round }}",
            "{% include 'header.j2' %}",
            "{{ rows|map(attribute='amount')|sum }}",
        ],
    )
    def test_runtime_failures_are_template_errors(self, aggregated, template):
        with pytest.raises(TemplateError, match="rendering failed"):
            render(aggregated, template)

    def test_render_does_not_mutate(self, aggregated):
        before = aggregated_to_dict(aggregated)
        render(aggregated, DEFAULT_TEMPLATE)
        assert aggregated_to_dict(aggregated) == before

    def test_context_recipient_totals_keep_first_seen_order(self, aggregated):
        context = build_context(aggregated)
        assert context["recipients"] == [
            {"name": "alice", "amount": "2.500"},
            {"name": "bob", "amount": "0.500"},
        ]
        assert context["no_fee"] == [
            {"name": "app", "version": "0.1.0"},
            {"name": "log", "version": "0.4.20"},
        ]
        assert context["warnings"] == [
            {
                "name": "rand",
                "version": "0.8.5",
                "message": "fetch failed",
                "detail": "HTTP 503 (after 4 attempts)",
                "text": "rand: fetch failed",
            }
        ]


class TestTemplatesAndDumps:
    """Test template loading and the raw JSON dump."""

    def test_load_template(self, temp_dir):
        path = temp_dir / "report.j2"
        path.write_text("{{ total }}")
        assert load_template(path) == "{{ total }}"
        assert load_template(None) == DEFAULT_TEMPLATE

    def test_load_missing_template(self, temp_dir):
        with pytest.raises(TemplateError):
            load_template(temp_dir / "missing.j2")

    def test_aggregated_to_dict(self, aggregated):
        data = aggregated_to_dict(aggregated)
        assert data["root"] == {"name": "app", "version": "0.1.0", "source": "local"}
        assert data["total"] == "3.00"
        assert [row["package"]["name"] for row in data["rows"]] == ["serde", "tokio"]
        assert data["rows"][0]["profile"]["recipients"][1] == {"name": "bob", "share": "0.5"}
        assert data["warnings"][0]["detail"] == "HTTP 503 (after 4 attempts)"


class TestReportPrinter:
    """Test the console summary."""

    def test_print_aggregated(self, aggregated):
        output = io.StringIO()
        printer = ReportPrinter(Console(file=output, width=120, color_system=None))
        printer.print_aggregated(aggregated)

        text = output.getvalue()
        assert "OpenFare fees for app@0.1.0" in text
        assert "3.00 USD" in text
        assert "serde" in text
        assert "rand: fetch failed (HTTP 503 (after 4 attempts))" in text
        assert "2 package(s) declare no fee" in text

    def test_print_without_rows(self):
        output = io.StringIO()
        root = PackageIdentity("app", "0.1.0")
        printer = ReportPrinter(Console(file=output, width=120, color_system=None))
        printer.print_aggregated(AggregatedFee(root=root, currency=None, total=Decimal("0")))
        assert "No fees declared" in output.getvalue()
