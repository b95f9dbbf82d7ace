"""Command-line interface for Aegis Guard."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from aegis import __version__
from aegis.agent.baseline import get_learning_progress, is_learning_complete, load_baseline
from aegis.config import DEFAULT_CONFIG_FILE, ConfigError, GuardConfig, GuardMode, load_config, save_config
from aegis.edr.threat_intel import ThreatIntelTable, is_private_address
from aegis.events import EventSource, SecurityEvent, Severity
from aegis.rules import RuleEngine, match_event, parse_sigma_file


console = Console()

SEVERITY_STYLES = {
    "critical": "[red]CRITICAL[/red]",
    "high": "[yellow]HIGH[/yellow]",
    "medium": "[blue]MEDIUM[/blue]",
    "low": "[dim]LOW[/dim]",
    "info": "[dim]INFO[/dim]",
}


def _load_config_or_exit(config_path: Optional[str]) -> GuardConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)


def event_from_json(data: dict) -> SecurityEvent:
    """Build a SecurityEvent from a loosely shaped JSON object."""
    metadata = dict(data.get("metadata") or {})
    # Unknown top-level keys are treated as metadata fields
    for key, value in data.items():
        if key not in {"id", "source", "severity", "category", "description", "host", "metadata", "timestamp"}:
            metadata[key] = value

    try:
        source = EventSource(data.get("source", EventSource.SYSLOG.value))
    except ValueError:
        source = EventSource.SYSLOG

    return SecurityEvent.create(
        source=source,
        category=str(data.get("category", "")),
        description=str(data.get("description", "")),
        severity=Severity.parse(data.get("severity")),
        metadata=metadata,
        host=data.get("host"),
        event_id=data.get("id"),
    )


@click.group()
@click.version_option(version=__version__, prog_name="aegis")
def main():
    """Aegis Guard - host threat detection and response."""
    pass


@main.group()
def guard():
    """Run and inspect the guard engine.

    The guard watches logs, network connections, processes and files,
    matches them against Sigma rules and responds by confidence.
    """
    pass


@guard.command()
@click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help=f"Config file (default: {DEFAULT_CONFIG_FILE})")
@click.option("--mode", type=click.Choice([m.value for m in GuardMode]), default=None,
              help="Override the configured mode")
@click.option("--rules-dir", type=click.Path(file_okay=False), default=None,
              help="Additional Sigma rules directory")
@click.option("-v", "--verbose", is_flag=True, help="Verbose logging")
def start(config_path: Optional[str], mode: Optional[str], rules_dir: Optional[str], verbose: bool):
    """Start the guard engine.

    Examples:

        aegis guard start

        aegis guard start --mode protection --rules-dir ./rules -v
    """
    from aegis.agent.daemon import run_daemon

    config = _load_config_or_exit(config_path)
    overrides = {}
    if mode:
        overrides["mode"] = GuardMode(mode)
    if rules_dir:
        overrides["rules_dir"] = Path(rules_dir)
    if overrides:
        config = config.model_copy(update=overrides)

    console.print(Panel.fit(
        "[bold cyan]AEGIS GUARD[/bold cyan]\n"
        "[dim]Threat Detection & Response[/dim]",
        border_style="cyan",
    ))
    console.print()

    table = Table(show_header=False, box=None)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    policy = config.action_policy
    table.add_row("Mode", "[yellow]PROTECTION[/yellow]" if config.mode == GuardMode.PROTECTION else "Learning")
    table.add_row("Rules", str(config.rules_dir) if config.rules_dir else "Builtin only")
    table.add_row("Action Policy", f"auto >= {policy.auto_respond}%, confirm >= {policy.notify_and_wait}%")
    table.add_row("AI", f"{config.ai.provider}/{config.ai.model or 'default'}" if config.ai.provider else "Disabled")
    table.add_row("Data Dir", str(config.data_dir))

    console.print(table)
    console.print()
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    console.print()

    try:
        asyncio.run(run_daemon(config, verbose=verbose))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping guard...[/yellow]")


@guard.command()
@click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Config file")
def status(config_path: Optional[str]):
    """Show the learned baseline and learning progress."""
    config = _load_config_or_exit(config_path)
    baseline = load_baseline(config.baseline_path)

    console.print(Panel.fit(
        "[bold cyan]AEGIS GUARD STATUS[/bold cyan]",
        border_style="cyan",
    ))
    console.print()

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    complete = is_learning_complete(baseline, config.learning_days)
    table.add_row("Configured Mode", config.mode.value)
    table.add_row("Learning Started", baseline.learning_started[:19])
    table.add_row(
        "Learning Progress",
        f"{get_learning_progress(baseline, config.learning_days)}%"
        + (" [green](complete)[/green]" if complete else ""),
    )
    table.add_row("Events Learned", str(baseline.event_count))
    table.add_row("Baseline Confidence", f"{baseline.confidence_level * 100:.1f}%")
    table.add_row("Known Processes", str(len(baseline.normal_processes)))
    table.add_row("Known Destinations", str(len(baseline.normal_connections)))
    table.add_row("Known Users", str(len(baseline.normal_login_patterns)))

    console.print(table)
    console.print()

    if complete and config.mode == GuardMode.LEARNING:
        console.print("[yellow]Learning period elapsed.[/yellow] "
                      "Run 'aegis guard start --mode protection' to enable responses.")
    elif not config.baseline_path.exists():
        console.print("[dim]No baseline yet. Run 'aegis guard start' to begin learning.[/dim]")


@guard.command()
@click.option("--rules-dir", type=click.Path(file_okay=False), default=None,
              help="Additional Sigma rules directory")
@click.option("--no-builtin", is_flag=True, help="Exclude builtin rules")
def rules(rules_dir: Optional[str], no_builtin: bool):
    """List the active detection rules."""
    engine = RuleEngine(rules_dir=rules_dir, include_builtin=not no_builtin)
    engine.load_rules()

    if not len(engine):
        console.print("[dim]No rules found[/dim]")
        return

    table = Table(title=f"Detection Rules ({len(engine)})")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Level")
    table.add_column("MITRE")
    table.add_column("Status", style="dim")

    for rule in sorted(engine.get_rules(), key=lambda r: (-r.level.rank, r.title)):
        table.add_row(
            rule.id,
            rule.title,
            SEVERITY_STYLES.get(rule.level.value, rule.level.value),
            ", ".join(rule.mitre_techniques),
            rule.status,
        )

    console.print(table)


@guard.command("check-rule")
@click.argument("rule_file", type=click.Path(exists=True, dir_okay=False))
@click.option("-e", "--event", "event_json", required=True,
              help="Event as JSON, or @path to a JSON file")
def check_rule(rule_file: str, event_json: str):
    """Test a Sigma rule against a single event.

    Example:

        aegis guard check-rule brute.yml -e '{"category": "authentication", "description": "Failed login"}'
    """
    rule = parse_sigma_file(rule_file)
    if rule is None:
        console.print(Panel(
            "[red]Rule could not be parsed.[/red] It needs title, level and a detection block with a condition.",
            title="Invalid Rule",
            border_style="red",
        ))
        sys.exit(1)

    try:
        raw = Path(event_json[1:]).read_text() if event_json.startswith("@") else event_json
        data = json.loads(raw)
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Invalid event JSON:[/red] {e}")
        sys.exit(1)
    if not isinstance(data, dict):
        console.print("[red]Event must be a JSON object[/red]")
        sys.exit(1)

    event = event_from_json(data)
    result = match_event(event, rule)

    console.print(Syntax(Path(rule_file).read_text(), "yaml", theme="monokai", line_numbers=True))
    console.print()
    if result is None:
        console.print(Panel(
            f"[yellow]No match[/yellow] for rule {rule.title}",
            title="Result",
            border_style="yellow",
        ))
        sys.exit(1)

    console.print(Panel(
        f"[green]Matched[/green] {rule.title} ({rule.level.value})\n"
        f"Fields: {', '.join(result.matched_fields) or '-'}",
        title="Result",
        border_style="green",
    ))


@guard.command()
@click.option("-c", "--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Config file")
@click.option("--init", is_flag=True, help="Write a config file with the defaults")
def config(config_path: Optional[str], init: bool):
    """Show the effective configuration."""
    if init:
        path = Path(config_path) if config_path else DEFAULT_CONFIG_FILE
        if path.exists():
            console.print(f"[yellow]Config already exists:[/yellow] {path}")
            sys.exit(1)
        written = save_config(GuardConfig(), path)
        console.print(f"[green]Config written to:[/green] {written}")
        return

    cfg = _load_config_or_exit(config_path)
    console.print_json(json.dumps(cfg.to_dict(), indent=2))


@guard.command("check-ip")
@click.argument("ip")
def check_ip(ip: str):
    """Look up an address in the threat intelligence table."""
    cfg = _load_config_or_exit(None)
    table = ThreatIntelTable(data_file=cfg.data_dir / "threat_intel.json")

    if is_private_address(ip):
        console.print(f"[dim]{ip} is a private or local address (never flagged)[/dim]")
        return

    entry = table.check_ip(ip)
    if entry is None:
        console.print(f"[green]No threat intelligence for {ip}[/green]")
        return

    console.print(Panel(
        f"[red]{ip}[/red] matches {entry.indicator}\n"
        f"Threat: {entry.threat_type}\n"
        f"Source: {entry.source}\n"
        f"Confidence: {entry.confidence}%",
        title="Threat Intel Match",
        border_style="red",
    ))
    sys.exit(1)


if __name__ == "__main__":
    main()
