#!/usr/bin/env python3
"""
Dispatch Consensus CLI - run a ledger-coordinated economic dispatch agent.

Usage:
    dispatch-agent run --agent-id Org1 --topic-filter Org2
    dispatch-agent run --agent-id Org2 --topic-filter Org1 --yes
    dispatch-agent simulate --generation 0 --generation 5
    dispatch-agent verify

Examples:
    # Two agents on one Redis ledger, in two terminals
    dispatch-agent run --agent-id Org1 --topic-filter '^Org2SendUpdate$'
    dispatch-agent run --agent-id Org2 --topic-filter '^Org1SendUpdate$'

    # Three agents in-process, no Redis needed
    dispatch-agent simulate -g 0 -g 2.5 -g 6
"""

import asyncio
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..agents.dispatch_agent import DispatchAgent, SessionReport
from ..agents.operator import OperatorPrompt
from ..config import AgentSettings, MissingFieldPolicy
from ..errors import DispatchError
from ..infrastructure.redis_ledger import RedisLedger
from ..logging_config import configure_logging
from ..simulation import SimulationConfig, SimulationResult, run_simulation

app = typer.Typer(
    name="dispatch-agent",
    help="Consensus-based economic dispatch over a broadcast ledger",
    add_completion=False,
)
console = Console()


@app.command()
def run(
    agent_id: Optional[str] = typer.Option(
        None,
        "--agent-id", "-a",
        help="Org identity this agent submits updates as",
    ),
    topic_filter: Optional[str] = typer.Option(
        None,
        "--topic-filter", "-t",
        help="Regular expression matched against peer event names",
    ),
    redis_url: Optional[str] = typer.Option(
        None,
        "--redis-url",
        help="Redis URL of the ledger (default: DISPATCH_REDIS_URL or redis://localhost:6379)",
    ),
    initial_generation: Optional[float] = typer.Option(
        None,
        "--initial-generation",
        help="Generation (MW) the agent starts from",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Give up after this many seconds without a peer event",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        help="Stop after this many updates even if not converged",
    ),
    policy: Optional[MissingFieldPolicy] = typer.Option(
        None,
        "--missing-fields",
        help="What to do with events lacking Lambda/Mismatch: zero, skip or abort",
    ),
    yes: bool = typer.Option(
        False,
        "--yes", "-y",
        help="Start without asking for confirmation",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Log every update",
    ),
):
    """Run one agent against the Redis ledger until it converges."""
    load_dotenv()
    configure_logging(verbose)

    overrides = {
        "agent_id": agent_id,
        "topic_filter": topic_filter,
        "redis_url": redis_url,
        "initial_generation": initial_generation,
        "receive_timeout": timeout,
        "max_iterations": max_iterations,
        "missing_field_policy": policy,
    }
    try:
        settings = AgentSettings(**{k: v for k, v in overrides.items() if v is not None})
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/] {escape(str(e))}")
        raise typer.Exit(1)

    console.print(Panel.fit(
        f"[bold cyan]Dispatch Consensus Agent[/]\n\n"
        f"Agent: [green]{settings.agent_id}[/]\n"
        f"Listening to: [yellow]{settings.topic_filter}[/]\n"
        f"Ledger: {settings.redis_url} ({settings.ledger_stream})\n"
        f"Initial generation: {settings.initial_generation} MW",
        title="Configuration",
    ))

    try:
        report = asyncio.run(_run_agent(settings, auto_confirm=yes))
    except DispatchError as e:
        console.print(f"[red]Session aborted:[/] {escape(str(e))}")
        raise typer.Exit(1)

    _display_report(report)


async def _run_agent(settings: AgentSettings, auto_confirm: bool) -> SessionReport:
    async with RedisLedger(
        org=settings.agent_id,
        url=settings.redis_url,
        stream=settings.ledger_stream,
    ) as ledger:
        agent = DispatchAgent(
            ledger,
            settings=settings,
            operator=OperatorPrompt(console=console),
            auto_confirm=auto_confirm,
        )
        return await agent.run()


@app.command()
def simulate(
    generations: list[float] = typer.Option(
        [0.0, 5.0],
        "--generation", "-g",
        help="Initial generation (MW) of each agent; repeat once per agent",
    ),
    timeout: float = typer.Option(
        2.0,
        "--timeout",
        help="Seconds an agent waits for a peer event before giving up",
    ),
    max_iterations: int = typer.Option(
        1000,
        "--max-iterations",
        min=1,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
    ),
):
    """Run several agents in-process over an in-memory ledger."""
    configure_logging(verbose)

    if len(generations) < 2:
        console.print("[red]A dispatch session needs at least two agents.[/]")
        raise typer.Exit(1)

    config = SimulationConfig(
        initial_generations=tuple(generations),
        receive_timeout=timeout,
        max_iterations=max_iterations,
    )
    try:
        result = asyncio.run(run_simulation(config))
    except (DispatchError, ValueError) as e:
        console.print(f"[red]Simulation failed:[/] {escape(str(e))}")
        raise typer.Exit(1)

    _display_simulation(result)


@app.command()
def verify(
    redis_url: Optional[str] = typer.Option(None, "--redis-url"),
    stream: str = typer.Option("dispatch:ledger", "--stream"),
):
    """Check the hash chain of a Redis ledger stream."""
    load_dotenv()

    async def _verify() -> bool:
        async with RedisLedger(org="verifier", url=redis_url, stream=stream) as ledger:
            return await ledger.verify_chain()

    try:
        intact = asyncio.run(_verify())
    except DispatchError as e:
        console.print(f"[red]Verification failed:[/] {escape(str(e))}")
        raise typer.Exit(1)

    if intact:
        console.print(f"[green]Ledger {stream} is intact.[/]")
    else:
        console.print(f"[red]Ledger {stream} failed hash-chain verification.[/]")
        raise typer.Exit(1)


@app.command()
def version():
    """Show version information."""
    console.print(f"[cyan]Dispatch Consensus[/] v{__version__}")


def _display_report(report: SessionReport) -> None:
    style = "green" if report.converged else "yellow"
    console.print(f"\n[bold {style}]Session {report.outcome.value}[/]")
    for line in report.summary_lines():
        console.print(f"  {line}")


def _display_simulation(result: SimulationResult) -> None:
    table = Table(title="Dispatch Session", show_header=True, header_style="bold magenta")
    table.add_column("Agent", style="cyan")
    table.add_column("Outcome")
    table.add_column("Iterations", justify="right")
    table.add_column("Generation (MW)", justify="right")
    table.add_column("Price ($/MWh)", justify="right")
    table.add_column("Mismatch", justify="right")

    for report in result.reports:
        table.add_row(
            report.agent_id,
            report.outcome.value,
            str(report.iterations),
            f"{report.generation:.4f}",
            f"{report.price:.4f}",
            f"{report.mismatch:.4f}",
        )

    console.print(table)
    chain = "[green]valid[/]" if result.chain_valid else "[red]BROKEN[/]"
    console.print(f"Ledger height: {result.ledger_height} | hash chain: {chain}")


def main():
    """Entry point for dispatch-agent command."""
    app()


if __name__ == "__main__":
    main()
