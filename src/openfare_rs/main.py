"""
Command line interface for openfare-rs.

Loads a resolved Cargo dependency description, aggregates the OpenFare fees
of every dependency reachable from the selected root packages and renders a
report.
"""

import asyncio
import json
import sys
from typing import List, Optional, Set, Tuple

import click
from rich.console import Console
from rich.tree import Tree

from .aggregator import AggregatedFee, FeeAggregator
from .cli_config import (
    OpenFareConfig,
    create_sample_config,
    load_config,
    validate_config_values,
)
from .error_handling import ConfigurationError, OpenFareError, RootNotFoundError, TemplateError
from .graph import DependencyGraph, build, parse_kinds
from .lockfile import LockDescription, load_lock_description
from .package import PackageIdentity
from .profile_cache import ProfileCache
from .profile_client import ProfileClient, RetryPolicy
from .profile_sources import get_profile_sources
from .reporting import ReportPrinter, aggregated_to_dict, load_template, render
from .structured_logging import (
    clear_run_context,
    configure_logging,
    get_aggregator_logger,
    set_run_context,
)

__version__ = "0.1.1"

# Reports go to stdout; status and warnings go to stderr
console = Console(stderr=True)


def parse_root_option(value: str) -> Tuple[str, Optional[str]]:
    """Split ``NAME[@VERSION]`` into a name and an optional version."""
    name, _, version = value.strip().partition("@")
    if not name:
        raise RootNotFoundError(f"Invalid root {value!r}, expected NAME[@VERSION]")
    return name, version or None


def select_roots(
    graph: DependencyGraph,
    description: LockDescription,
    root: Optional[str] = None,
) -> List[PackageIdentity]:
    """
    Pick the packages to report on.

    An explicit root wins; otherwise the description's own roots are used,
    falling back to every local package nothing depends on.

    Raises:
        RootNotFoundError: If the requested root is missing or ambiguous
    """
    if root:
        name, version = parse_root_option(root)
        matches = graph.find(name, version)
        if not matches:
            raise RootNotFoundError(f"Root package {root} is not in the dependency graph")
        if len(matches) > 1:
            candidates = ", ".join(str(match) for match in matches)
            raise RootNotFoundError(f"Root package {root} is ambiguous: {candidates}")
        return matches

    roots = [identity for identity in description.roots if identity in graph]
    if roots:
        return roots

    roots = [identity for identity in graph.local_packages() if not graph.dependents(identity)]
    if not roots:
        raise RootNotFoundError("No root package found; use --root to select one")
    return roots


async def aggregate_roots(
    graph: DependencyGraph,
    roots: List[PackageIdentity],
    config: OpenFareConfig,
) -> List[AggregatedFee]:
    """Aggregate the fees of each root, sharing one client and cache."""
    network = config.network
    aggregation = config.aggregation
    retry_policy = RetryPolicy.from_retries(
        network.retry_attempts,
        base_delay=network.backoff_base_seconds,
        max_delay=network.backoff_max_seconds,
    )

    async with ProfileClient(
        get_profile_sources(network.profile_url_templates),
        timeout=network.timeout_seconds,
        retry_policy=retry_policy,
        user_agent=network.user_agent,
    ) as client:
        cache = ProfileCache(client)
        aggregator = FeeAggregator(
            cache,
            target_currency=aggregation.target_currency,
            max_concurrent=aggregation.max_concurrent,
            deadline_seconds=aggregation.deadline_seconds,
            dependency_kinds=parse_kinds(aggregation.dependency_kinds),
        )

        results = []
        for root in roots:
            aggregated, _ = await aggregator.aggregate(graph, root)
            results.append(aggregated)

        get_aggregator_logger().debug("cache_stats", **cache.get_stats())
        return results


def write_output(content: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w", encoding="utf-8") as f:
            f.write(content)
        console.print(f"✅ Report saved to {output_file}", style="green")
    else:
        click.echo(content, nl=not content.endswith("\n"))


def json_dump(results: List[AggregatedFee]) -> str:
    return json.dumps([aggregated_to_dict(result) for result in results], indent=2)


def _load_graph(lockfile: str):
    description = load_lock_description(lockfile)
    return description, build(description.packages)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version information")
@click.pass_context
def cli(ctx, version):
    """
    openfare-rs: OpenFare fee reports for Rust dependency graphs.

    Aggregates the fees declared by every package a crate depends on,
    counting each distinct package once.
    """
    if version:
        click.echo(f"openfare-rs version {__version__}")
        ctx.exit()

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("lockfile", type=click.Path(exists=True, readable=True, dir_okay=False))
@click.option("--root", help="Root package as NAME[@VERSION] (default: workspace roots)")
@click.option(
    "--template",
    "template_path",
    type=click.Path(exists=True, readable=True, dir_okay=False),
    help="Jinja2 report template",
)
@click.option("--target-currency", help="Only count fees in this currency")
@click.option("--timeout", type=float, help="Per-request timeout in seconds")
@click.option("--retries", type=int, help="Retries per profile lookup")
@click.option("--max-concurrent", type=int, help="Maximum concurrent profile lookups")
@click.option("--deadline", type=float, help="Overall time budget for lookups in seconds")
@click.option("--kinds", help="Dependency kinds to follow, e.g. normal,build")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    help="Output format (default from config or text)",
)
@click.option("--output", "-o", "output_file", type=click.Path(), help="Write the report to a file")
@click.option("--quiet", "-q", is_flag=True, help="Suppress warnings on stderr")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging and a summary table")
def report(
    lockfile: str,
    root: Optional[str],
    template_path: Optional[str],
    target_currency: Optional[str],
    timeout: Optional[float],
    retries: Optional[int],
    max_concurrent: Optional[int],
    deadline: Optional[float],
    kinds: Optional[str],
    output_format: Optional[str],
    output_file: Optional[str],
    quiet: bool,
    verbose: bool,
) -> None:
    """
    Aggregate dependency fees from a Cargo.lock or cargo metadata JSON file.

    Examples:

      openfare-rs report Cargo.lock

      openfare-rs report Cargo.lock --root my-crate --target-currency USD

      cargo metadata --format-version 1 > metadata.json && openfare-rs report metadata.json --format json
    """
    try:
        config = load_config()

        if target_currency is not None:
            config.aggregation.target_currency = target_currency.strip().upper()
        if timeout is not None:
            config.network.timeout_seconds = timeout
        if retries is not None:
            config.network.retry_attempts = retries
        if max_concurrent is not None:
            config.aggregation.max_concurrent = max_concurrent
        if deadline is not None:
            config.aggregation.deadline_seconds = deadline
        if kinds is not None:
            config.aggregation.dependency_kinds = [
                kind.strip().lower() for kind in kinds.split(",") if kind.strip()
            ]
        if template_path is not None:
            config.report.template_path = template_path
        if output_format is not None:
            config.report.output_format = output_format.lower()
        if verbose:
            config.logging.log_level = "DEBUG"
        elif quiet:
            config.logging.log_level = "ERROR"

        validation_errors = validate_config_values(config)
        if validation_errors:
            raise ConfigurationError(validation_errors)

        configure_logging(config.logging.log_level, config.logging.json_logs)

        description, dependency_graph = _load_graph(lockfile)
        roots = select_roots(dependency_graph, description, root)
        set_run_context(lockfile=lockfile, root=", ".join(str(r) for r in roots))

        results = asyncio.run(aggregate_roots(dependency_graph, roots, config))

        printer = ReportPrinter(console)
        if not quiet:
            for result in results:
                if verbose:
                    printer.print_aggregated(result)
                elif result.warnings:
                    printer.print_warnings(list(result.warnings))

        if config.report.output_format == "json":
            write_output(json_dump(results), output_file)
            return

        try:
            template = load_template(config.report.template_path)
            rendered = "\n".join(render(result, template) for result in results)
        except TemplateError as e:
            console.print(f"❌ Report rendering failed: {e}", style="red")
            write_output(json_dump(results), output_file)
            sys.exit(1)

        write_output(rendered, output_file)

    except KeyboardInterrupt:
        console.print("\n⚠️  Interrupted by user", style="yellow")
        sys.exit(130)
    except OpenFareError as e:
        console.print(f"❌ Error: {e}", style="red")
        sys.exit(1)
    finally:
        clear_run_context()


def _add_subtree(
    tree: Tree,
    graph: DependencyGraph,
    identity: PackageIdentity,
    seen: Set[PackageIdentity],
) -> None:
    for child in graph.dependencies(identity):
        if child in seen:
            tree.add(f"[dim]{child} (*)[/dim]")
            continue
        seen.add(child)
        _add_subtree(tree.add(str(child)), graph, child, seen)


@cli.command()
@click.argument("lockfile", type=click.Path(exists=True, readable=True, dir_okay=False))
@click.option("--root", help="Root package as NAME[@VERSION] (default: workspace roots)")
def graph(lockfile: str, root: Optional[str]) -> None:
    """
    Print the deduplicated dependency tree.

    Packages already shown elsewhere in the tree are marked with (*).
    """
    try:
        description, dependency_graph = _load_graph(lockfile)
        roots = select_roots(dependency_graph, description, root)
    except OpenFareError as e:
        console.print(f"❌ Error: {e}", style="red")
        sys.exit(1)

    output = Console()
    for identity in roots:
        tree = Tree(f"[bold]{identity}[/bold]")
        _add_subtree(tree, dependency_graph, identity, {identity})
        output.print(tree)


@cli.command("config")
@click.option("--sample", is_flag=True, help="Print a sample configuration file")
def config_command(sample: bool) -> None:
    """Show the effective configuration, or a sample configuration file."""
    if sample:
        click.echo(create_sample_config())
        return

    try:
        config = load_config()
    except ConfigurationError as e:
        console.print(f"❌ {e}", style="red")
        sys.exit(1)
    click.echo(json.dumps(config.to_dict(), indent=2))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
