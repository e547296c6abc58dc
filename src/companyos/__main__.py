"""
CompanyOS CLI entry point.

Usage:
    companyos [OPTIONS] COMMAND [ARGS]...
    python -m companyos classify patch.js --type fix
"""

import json
from pathlib import Path

import typer
from rich import box
from rich.console import Console
from rich.table import Table

from companyos import __version__
from companyos.approval.classifier import ApprovalClassifier
from companyos.approval.models import Change, ChangeType, RiskLevel
from companyos.core.config import configure_logging, get_config

console = Console()

app = typer.Typer(
    name="companyos",
    help="CompanyOS - event distribution and change approval",
    no_args_is_help=True,
)

_RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.CRITICAL: "bold red",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """CompanyOS - event distribution and change approval."""
    configure_logging("DEBUG" if verbose else get_config().log_level)


@app.command("classify")
def classify(
    file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="File holding the changed code",
    ),
    change_type: ChangeType = typer.Option(
        None,
        "--type",
        "-t",
        help="Kind of change",
    ),
    description: str = typer.Option(
        "",
        "--description",
        "-d",
        help="What the change does",
    ),
    file_path: str = typer.Option(
        None,
        "--file-path",
        "-f",
        help="Repository path of the change (defaults to FILE)",
    ),
    tests_failed: bool = typer.Option(
        False,
        "--tests-failed",
        help="The test run for this change failed",
    ),
    security_issues: list[str] = typer.Option(
        [],
        "--security-issue",
        "-s",
        help="Security finding (can specify multiple)",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the verdict as JSON"),
):
    """
    Classify a change and show whether it needs human approval.

    Exits with status 1 when approval is required.
    """
    change = Change(
        type=change_type,
        code=file.read_text(),
        file_path=file_path or str(file),
        security_issues=tuple(security_issues),
        test_results={"passed": False} if tests_failed else {},
        description=description,
    )
    verdict = ApprovalClassifier.from_config(get_config()).classify(change)

    if as_json:
        console.print_json(json.dumps(verdict.to_dict()))
    else:
        style = _RISK_STYLES[verdict.risk_level]
        decision = (
            "[red]Needs approval[/red]" if verdict.needs_approval else "[green]Auto-approved[/green]"
        )
        console.print(f"{decision}  risk: [{style}]{verdict.risk_level.value}[/{style}]")
        console.print(f"Category: [cyan]{verdict.category.value}[/cyan]")
        console.print(f"Lines: {change.line_count}\n")
        for reason in verdict.reasons:
            console.print(f"  • {reason}")

    if verdict.needs_approval:
        raise typer.Exit(code=1)


@app.command("rules")
def rules():
    """List the approval rules in evaluation order."""
    classifier = ApprovalClassifier.from_config(get_config())

    table = Table(title="Approval Rules", box=box.ROUNDED)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Risk")
    table.add_column("Approval")
    table.add_column("Description")

    for index, rule in enumerate(classifier.rules_summary(), start=1):
        style = _RISK_STYLES[RiskLevel(rule["risk_level"])]
        table.add_row(
            str(index),
            rule["name"],
            f"[{style}]{rule['risk_level']}[/{style}]",
            "required" if rule["needs_approval"] else "[dim]auto[/dim]",
            rule["description"],
        )

    console.print(table)
    console.print(
        f"\n[dim]Changes over {classifier.max_auto_approve_lines} lines always need review[/dim]"
    )


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to"),
    port: int = typer.Option(8080, "--port", "-p", help="Port to listen on"),
):
    """Run the hub (HTTP API and dashboard sockets)."""
    import uvicorn

    from companyos.hub.api.app import create_app

    config = get_config()
    if not config.auth.secret_key:
        console.print("[yellow]JWT_SECRET_KEY is not set; every connection will be rejected.[/yellow]")
    if host == "0.0.0.0":
        console.print("[yellow]Binding to 0.0.0.0 - the hub is reachable from the network.[/yellow]")

    console.print(f"[bold green]Starting CompanyOS hub on http://{host}:{port}[/bold green]")
    uvicorn.run(create_app(config), host=host, port=port, log_level=config.log_level.lower())


@app.command("version")
def version():
    """Show the CompanyOS version."""
    console.print(f"CompanyOS [bold]{__version__}[/bold]")


if __name__ == "__main__":
    app()
