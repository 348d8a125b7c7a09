from pathlib import Path

import typer

from batchrelay.cli.enums import Provider


def provider_callback(ctx: typer.Context, value: str | None):
    if ctx.resilient_parsing or value is None:
        return value
    if value not in Provider.__members__.values():
        raise typer.BadParameter(
            message=f"'{value}' is not a valid provider, supported providers are: {', '.join(Provider.__members__.values())}",
            param_hint="--provider, -p",
        )
    return value


def load_file_callback(ctx: typer.Context, value: Path):
    if ctx.resilient_parsing:
        return
    if not value.exists():
        raise typer.BadParameter(
            message=f"file at path: '{value.as_posix()}' does not exist",
        )
    return value
