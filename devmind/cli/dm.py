#!/usr/bin/env python3
"""
Command line entry point for DevMind.

Usage:
    devmind classify "text"      - Label an activity
    devmind value "text"         - Score how worth keeping it is
    devmind decide "text"        - Show the capture decision
    devmind ranges FILE          - Changed-line ranges for a file
    devmind identity [PATH]      - Project root, fingerprint and stack
    devmind config show          - Print the effective configuration
"""

import asyncio
import json
import sys
from typing import Optional, Tuple

import click
import yaml
from loguru import logger
from rich.console import Console
from rich.table import Table

from ..daemon.capture import CaptureDecisionEngine, CapturePreferences
from ..daemon.classifier import ActivityClassifier
from ..daemon.config import Config
from ..daemon.diff_ranges import DiffRangeExtractor, GitDiffProvider
from ..daemon.identity import IdentityResolver
from ..daemon.models import ActivityType
from ..daemon.value import ValueEvaluator

console = Console()

ACTIVITY_CHOICES = [t.value for t in ActivityType]


def _read_text(text: str) -> str:
    if text == "-":
        return sys.stdin.read()
    return text


def _print_json(data: dict) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False), help="Config file")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, config_path: Optional[str], verbose: bool):
    """DevMind - development memory capture and retrieval."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")
    try:
        ctx.obj = Config.load(config_path)
    except (OSError, ValueError) as e:
        raise click.ClickException(str(e))


@cli.command()
@click.argument("text")
@click.option("--history", "-H", multiple=True, type=click.Choice(ACTIVITY_CHOICES),
              help="Earlier activity types, oldest first")
@click.option("--json", "as_json", is_flag=True, help="Machine readable output")
def classify(text: str, history: Tuple[str, ...], as_json: bool):
    """Classify activity text. Use '-' to read stdin."""
    result = ActivityClassifier().classify(_read_text(text), list(history))
    if as_json:
        _print_json(result.to_dict())
        return

    console.print(f"[bold]{result.type.value}[/bold] ({result.confidence}%)")
    console.print(f"[dim]{result.reasoning}[/dim]")

    table = Table(title="Scores")
    table.add_column("Type", style="cyan")
    table.add_column("Score", justify="right")
    for kind, score in sorted(result.scores.items(), key=lambda kv: kv[1], reverse=True):
        table.add_row(kind.value, str(score))
    console.print(table)


@cli.command()
@click.argument("text")
@click.option("--type", "-t", "activity_type", type=click.Choice(ACTIVITY_CHOICES),
              help="Activity type, classified when omitted")
@click.option("--json", "as_json", is_flag=True, help="Machine readable output")
def value(text: str, activity_type: Optional[str], as_json: bool):
    """Evaluate the value of activity text."""
    text = _read_text(text)
    kind = ActivityType(activity_type) if activity_type else ActivityClassifier().classify(text).type
    score = ValueEvaluator().evaluate(text, kind)
    if as_json:
        _print_json(score.to_dict())
        return

    table = Table(title=f"Value for {kind.value}: {score.total_score}/100")
    table.add_column("Dimension", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Details")
    table.add_row("code significance", f"{score.code_significance:.0f}", score.breakdown["code_details"])
    table.add_row("problem complexity", f"{score.problem_complexity:.0f}", score.breakdown["problem_details"])
    table.add_row("solution importance", f"{score.solution_importance:.0f}", score.breakdown["solution_details"])
    table.add_row("reusability", f"{score.reusability:.0f}", score.breakdown["reusability_details"])
    console.print(table)


@cli.command()
@click.argument("text")
@click.pass_obj
def decide(config: Config, text: str):
    """Show whether text would be recorded, discarded or confirmed."""
    text = _read_text(text)
    classification = ActivityClassifier().classify(text)
    score = ValueEvaluator().evaluate(text, classification.type)
    engine = CaptureDecisionEngine(CapturePreferences.from_config(config.capture))
    decision = engine.decide(text, classification, score)
    engine.shutdown()

    colors = {"auto_record": "green", "discard": "red", "pending": "yellow"}
    color = colors[decision.outcome.value]
    console.print(f"[{color}]{decision.outcome.value}[/{color}] priority={decision.priority.value}")
    console.print(decision.reasoning)
    if decision.suggested_tags:
        console.print(f"Tags: {', '.join(decision.suggested_tags)}")


@cli.command()
@click.argument("file_path")
@click.option("--root", "-r", default=".", type=click.Path(file_okay=False), help="Repository root")
def ranges(file_path: str, root: str):
    """Changed-line ranges for a file against HEAD."""
    extractor = DiffRangeExtractor(GitDiffProvider(root), root)
    result = asyncio.run(extractor.extract(file_path))
    _print_json(result.to_dict())


@cli.command()
@click.argument("path", default=".")
@click.pass_obj
def identity(config: Config, path: str):
    """Resolve the project a path belongs to."""
    descriptor = IdentityResolver(config.identity).describe(path)

    table = Table(title=descriptor.name)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, val in descriptor.to_dict().items():
        table.add_row(key, "" if val is None else str(val))
    console.print(table)


@cli.group(name="config")
def config_group():
    """Configuration commands."""


@config_group.command(name="show")
@click.pass_obj
def config_show(config: Config):
    """Print the effective configuration as YAML."""
    click.echo(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False))


def main():
    cli()


if __name__ == "__main__":
    main()
