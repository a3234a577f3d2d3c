"""
Color-coded console output.
"""

import click


def print_status(message: str) -> None:
    click.echo(f"{click.style('[INFO]', fg='blue')} {message}")


def print_success(message: str) -> None:
    click.echo(f"{click.style('[SUCCESS]', fg='green')} {message}")


def print_warning(message: str) -> None:
    click.echo(f"{click.style('[WARNING]', fg='yellow', bold=True)} {message}")


def print_error(message: str) -> None:
    click.echo(f"{click.style('[ERROR]', fg='red')} {message}", err=True)


def print_line(message: str = "") -> None:
    click.echo(message)


def print_banner(title: str) -> None:
    click.echo(title)
    click.echo("=" * len(title))
