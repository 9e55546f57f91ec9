"""Thin CLI wrapper for isobuild.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from isobuild import __version__
from isobuild.config import get_settings, print_settings_json

if TYPE_CHECKING:
    from isobuild.pipeline.models import Artifact, PipelineRun
    from isobuild.recipes.schema import RecipeSchema

app = typer.Typer(
    name="isobuild",
    help="Build-artifact isolation pipeline - compile, then ship only the binary",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

STATE_COLORS = {
    "packaged": "green",
    "failed": "red",
    "building": "blue",
    "pending": "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"isobuild version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through Rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """Build-artifact isolation pipeline."""
    configure_logging((log_level or get_settings().log_level).upper())


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Artifacts directory: {settings.artifacts_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Container engine:[/bold]")
        console.print(f"  Engine:              {settings.container_engine}")
        console.print(f"  Image prefix:        {settings.image_prefix}")
        console.print(f"  Registry URL:        {settings.registry_url}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Offline mode:        {settings.offline}")
        console.print(f"  Keep context:        {settings.keep_context}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  Registry timeout:    {settings.registry_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


def _load_recipe_or_exit(path: str) -> "RecipeSchema":
    """Load a recipe file, printing validation errors and exiting on failure."""
    from isobuild.recipes.io import RecipeError, load_recipe

    try:
        return load_recipe(Path(path))
    except RecipeError as e:
        console.print(f"[red]Invalid recipe ({e.code}): {e}[/red]")
        for err in e.errors:
            console.print(f"  {err['loc']}: {err['msg']}")
        raise typer.Exit(code=1) from None


recipe_app = typer.Typer(help="Validate, render and pin pipeline recipes")
app.add_typer(recipe_app, name="recipe")


@recipe_app.command("validate")
def recipe_validate(
    path: Annotated[str, typer.Argument(help="Path to recipe file to validate")],
) -> None:
    """Validate a recipe file."""
    recipe = _load_recipe_or_exit(path)
    flags = recipe.builder.flags
    console.print(f"[green]✓ Valid recipe: {recipe.name}[/green]")
    console.print(f"  Binary: {recipe.binary}")
    console.print(f"  Toolchain: {recipe.builder.toolchain_image}")
    console.print(f"  Base image: {recipe.runtime.base_image}")
    console.print(f"  Artifact: {recipe.artifact_path} -> {recipe.artifact_destination}")
    console.print(f"  Static crypto: {flags.static_crypto}")
    console.print(f"  Strip symbols: {flags.strip_symbols}")


@recipe_app.command("render")
def recipe_render(
    path: Annotated[str, typer.Argument(help="Path to recipe file")],
    output: Annotated[
        str | None,
        typer.Option("--output", "-o", help="Write the Dockerfile to this path"),
    ] = None,
) -> None:
    """Render the two-stage Dockerfile for a recipe."""
    from isobuild.pipeline.dockerfile import render_dockerfile
    from isobuild.pipeline.stages import Pipeline

    recipe = _load_recipe_or_exit(path)
    content = render_dockerfile(Pipeline.from_recipe(recipe))

    if output:
        out_path = Path(output)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(content, encoding="utf-8")
        console.print(f"[green]Wrote {out_path}[/green]")
    else:
        typer.echo(content, nl=False)


@recipe_app.command("show")
def recipe_show(
    path: Annotated[str, typer.Argument(help="Path to recipe file")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a recipe with all derived defaults filled in."""
    from isobuild.recipes.io import dump_recipe_json, dump_recipe_yaml

    recipe = _load_recipe_or_exit(path).resolved()
    if json_output:
        typer.echo(dump_recipe_json(recipe))
    else:
        typer.echo(dump_recipe_yaml(recipe), nl=False)


@recipe_app.command("pin")
def recipe_pin(
    path: Annotated[str, typer.Argument(help="Path to recipe file")],
    output: Annotated[
        str | None,
        typer.Option("--output", "-o", help="Write the pinned recipe here"),
    ] = None,
    in_place: Annotated[
        bool,
        typer.Option("--in-place", "-i", help="Overwrite the recipe file"),
    ] = False,
) -> None:
    """Pin the toolchain and base images of a recipe to digests."""
    from isobuild.recipes.io import dump_recipe_yaml, write_recipe
    from isobuild.registry.resolve import RegistryError, pin_recipe

    recipe = _load_recipe_or_exit(path)

    try:
        pinned = pin_recipe(recipe, settings=get_settings())
    except RegistryError as e:
        console.print(f"[red]Pinning failed ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    target = Path(path) if in_place else (Path(output) if output else None)
    if target is None:
        typer.echo(dump_recipe_yaml(pinned), nl=False)
        return

    write_recipe(pinned, target)
    console.print(f"[green]Pinned recipe written to {target}[/green]")
    console.print(f"  Toolchain: {pinned.builder.toolchain_image}")
    console.print(f"  Base image: {pinned.runtime.base_image}")


def _run_to_dict(run: "PipelineRun") -> dict[str, Any]:
    return {
        "id": run.id,
        "recipe": run.recipe_name,
        "state": run.state,
        "cache_key": run.cache_key,
        "is_cache_hit": run.is_cache_hit,
        "image_tag": run.image_tag,
        "image_id": run.image_id,
        "requested_at": run.requested_at.isoformat() if run.requested_at else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
        "run_dir": run.run_dir,
        "log_path": run.log_path,
        "failure_kind": run.failure_kind,
        "error_message": run.error_message,
        "artifact_count": len(run.artifacts),
    }


def _artifact_to_dict(artifact: "Artifact") -> dict[str, Any]:
    return {
        "id": artifact.id,
        "run_id": artifact.run_id,
        "kind": artifact.kind,
        "filename": artifact.filename,
        "relative_path": artifact.relative_path,
        "absolute_path": artifact.absolute_path,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
        "linkage": artifact.linkage,
        "stripped": artifact.stripped,
    }


build_app = typer.Typer(help="Run the build pipeline")
app.add_typer(build_app, name="build")


@build_app.command("run")
def build_run(
    recipe_path: Annotated[str, typer.Argument(help="Path to recipe file")],
    source: Annotated[
        str,
        typer.Option("--source", "-s", help="Service source tree (build context)"),
    ] = ".",
    tag: Annotated[
        str | None,
        typer.Option("--tag", "-t", help="Runtime image tag"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Force rebuild even if cached"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run the builder and runtime stages for a recipe.

    Exits 0 only when both stages complete and the image is packaged.
    """
    from isobuild.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )
    from isobuild.pipeline.context import ContextStagingError
    from isobuild.pipeline.service import PipelineServiceError, run_or_reuse
    from isobuild.pipeline.stages import PipelineExecutionError

    recipe = _load_recipe_or_exit(recipe_path)
    settings = get_settings()

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    # Failed runs are committed before the exit propagates
    with get_session(factory, keep_on=(PipelineExecutionError,)) as session:
        if not json_output:
            console.print(f"[blue]Running pipeline for {recipe.name}...[/blue]")

        try:
            run, is_cache_hit = run_or_reuse(
                session=session,
                recipe=recipe,
                source_dir=Path(source).resolve(),
                settings=settings,
                tag=tag,
                force=force,
            )
        except PipelineExecutionError as e:
            if json_output:
                typer.echo(
                    json.dumps(
                        {
                            "success": False,
                            "code": e.code,
                            "message": str(e),
                            "log_path": str(e.log_path) if e.log_path else None,
                        },
                        indent=2,
                    )
                )
            else:
                console.print(f"[red]✗ Pipeline failed ({e.code}): {e}[/red]")
                if e.log_path:
                    console.print(f"  Log: {e.log_path}")
            raise typer.Exit(code=1) from e
        except (ContextStagingError, PipelineServiceError) as e:
            console.print(f"[red]✗ Pipeline could not start ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            output = _run_to_dict(run)
            output["success"] = True
            output["is_cache_hit"] = is_cache_hit
            output["artifacts"] = [_artifact_to_dict(a) for a in run.artifacts]
            typer.echo(json.dumps(output, indent=2))
        else:
            hit_marker = " (cache hit)" if is_cache_hit else ""
            console.print(f"[green]✓ Run #{run.id} packaged{hit_marker}[/green]")
            console.print(f"  Image: {run.image_tag}")
            console.print(f"  Run directory: {run.run_dir}")
            for a in run.artifacts:
                console.print(f"    {a.kind}: {a.filename}")


runs_app = typer.Typer(help="Inspect pipeline runs")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    recipe: Annotated[
        str | None,
        typer.Option("--recipe", "-r", help="Filter by recipe name"),
    ] = None,
    state: Annotated[
        str | None,
        typer.Option(
            "--state", "-s", help="Filter by state (pending/building/packaged/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List pipeline runs."""
    from isobuild.db import create_all_tables, get_engine, get_session_factory
    from isobuild.pipeline.service import list_runs
    from isobuild.types import PipelineState

    state_filter: PipelineState | None = None
    if state:
        try:
            state_filter = PipelineState(state)
        except ValueError:
            console.print(f"[red]Invalid state: {state}[/red]")
            console.print("Valid values: pending, building, packaged, failed")
            raise typer.Exit(code=1) from None

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        runs = list_runs(session, recipe_name=recipe, state=state_filter, limit=limit)

        if not runs:
            if json_output:
                typer.echo("[]")
            else:
                console.print("[yellow]No runs found[/yellow]")
            return

        if json_output:
            typer.echo(json.dumps([_run_to_dict(r) for r in runs], indent=2))
        else:
            console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
            console.print()
            for r in runs:
                color = STATE_COLORS.get(r.state, "white")
                console.print(f"  [{color}]Run #{r.id}[/{color}]")
                console.print(f"    Recipe: {r.recipe_name}")
                console.print(f"    State: {r.state}")
                if r.image_tag:
                    console.print(f"    Image: {r.image_tag}")
                if r.failure_kind:
                    console.print(f"    Failure: {r.failure_kind}")
                console.print()


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Run ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a pipeline run."""
    from isobuild.db import create_all_tables, get_engine, get_session_factory
    from isobuild.pipeline.service import RunNotFoundError, get_run

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            run = get_run(session, run_id)
        except RunNotFoundError:
            console.print(f"[red]Run not found: {run_id}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            output = _run_to_dict(run)
            output["inspection"] = run.inspection
            output["artifacts"] = [_artifact_to_dict(a) for a in run.artifacts]
            typer.echo(json.dumps(output, indent=2))
            return

        color = STATE_COLORS.get(run.state, "white")
        console.print(f"[bold]Run #{run.id}[/bold]")
        console.print()
        console.print(f"  Recipe:      {run.recipe_name}")
        console.print(f"  State:       [{color}]{run.state}[/{color}]")
        console.print(f"  Cache key:   {run.cache_key}")
        console.print(f"  Image:       {run.image_tag or 'N/A'}")
        console.print(f"  Run dir:     {run.run_dir or 'N/A'}")
        console.print(f"  Log:         {run.log_path or 'N/A'}")
        if run.failure_kind:
            console.print(f"  Failure:     {run.failure_kind}")
            console.print(f"  Error:       {run.error_message}")
        if run.inspection:
            console.print(f"  Linkage:     {run.inspection.get('linkage')}")
            console.print(f"  Stripped:    {run.inspection.get('stripped')}")
            console.print(f"  Machine:     {run.inspection.get('machine')}")


@runs_app.command("compare")
def runs_compare(
    run_a: Annotated[int, typer.Argument(help="First run ID")],
    run_b: Annotated[int, typer.Argument(help="Second run ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Compare the artifacts of two packaged runs.

    Exits 1 when the artifacts differ in linkage mode or stripped state.
    """
    from isobuild.db import create_all_tables, get_engine, get_session_factory
    from isobuild.pipeline.service import (
        PipelineServiceError,
        RunNotFoundError,
        compare_runs,
    )

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        try:
            comparison = compare_runs(session, run_a, run_b)
        except (RunNotFoundError, PipelineServiceError) as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None

    if json_output:
        typer.echo(json.dumps(comparison.to_dict(), indent=2))
    else:
        marker = (
            "[green]equivalent[/green]"
            if comparison.equivalent
            else "[red]different[/red]"
        )
        console.print(f"Runs #{run_a} and #{run_b}: {marker}")
        console.print(f"  Linkage:   {comparison.linkage_a} / {comparison.linkage_b}")
        console.print(f"  Stripped:  {comparison.stripped_a} / {comparison.stripped_b}")
        console.print(f"  Identical: {comparison.identical}")

    if not comparison.equivalent:
        raise typer.Exit(code=1)


artifacts_app = typer.Typer(help="Manage run artifacts")
app.add_typer(artifacts_app, name="artifacts")


@artifacts_app.command("list")
def artifacts_list(
    run_id: Annotated[
        int | None,
        typer.Option("--run-id", "-r", help="Filter by run ID"),
    ] = None,
    kind: Annotated[
        str | None,
        typer.Option("--kind", "-k", help="Filter by artifact kind"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List artifacts."""
    from sqlalchemy import select

    from isobuild.db import create_all_tables, get_engine, get_session_factory
    from isobuild.pipeline.models import Artifact

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        stmt = select(Artifact)

        if run_id is not None:
            stmt = stmt.where(Artifact.run_id == run_id)
        if kind is not None:
            stmt = stmt.where(Artifact.kind == kind)

        stmt = stmt.order_by(Artifact.id.desc()).limit(100)
        artifacts = list(session.execute(stmt).scalars().all())

        if not artifacts:
            if json_output:
                typer.echo("[]")
            else:
                console.print("[yellow]No artifacts found[/yellow]")
            return

        if json_output:
            typer.echo(json.dumps([_artifact_to_dict(a) for a in artifacts], indent=2))
        else:
            console.print(f"[bold]Found {len(artifacts)} artifact(s):[/bold]")
            console.print()
            for a in artifacts:
                console.print(f"  [green]Artifact #{a.id}[/green]")
                console.print(f"    Run ID: {a.run_id}")
                console.print(f"    Kind: {a.kind or 'unknown'}")
                console.print(f"    Filename: {a.filename}")
                console.print(f"    Size: {a.size_bytes:,} bytes")
                console.print(f"    SHA256: {a.sha256[:16]}...")
                console.print()


@artifacts_app.command("show")
def artifacts_show(
    artifact_id: Annotated[int, typer.Argument(help="Artifact ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a specific artifact."""
    from isobuild.db import create_all_tables, get_engine, get_session_factory
    from isobuild.pipeline.models import Artifact

    engine = get_engine()
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with factory() as session:
        artifact = session.get(Artifact, artifact_id)

        if artifact is None:
            console.print(f"[red]Artifact not found: {artifact_id}[/red]")
            raise typer.Exit(code=1)

        if json_output:
            typer.echo(json.dumps(_artifact_to_dict(artifact), indent=2))
        else:
            console.print(f"[bold]Artifact #{artifact.id}[/bold]")
            console.print()
            console.print(f"  Run ID:        {artifact.run_id}")
            console.print(f"  Kind:          {artifact.kind or 'unknown'}")
            console.print(f"  Filename:      {artifact.filename}")
            console.print(f"  Relative path: {artifact.relative_path}")
            console.print(f"  Absolute path: {artifact.absolute_path or 'N/A'}")
            console.print(f"  Size:          {artifact.size_bytes:,} bytes")
            console.print(f"  SHA256:        {artifact.sha256}")
            if artifact.linkage:
                console.print(f"  Linkage:       {artifact.linkage}")
            if artifact.stripped is not None:
                console.print(f"  Stripped:      {artifact.stripped}")


@app.command("inspect")
def inspect_cmd(
    binary: Annotated[str, typer.Argument(help="Path to an ELF executable")],
    crypto_libs: Annotated[
        list[str] | None,
        typer.Option("--crypto-lib", help="Crypto library name (can be repeated)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Report linkage and strip state of a compiled executable."""
    from isobuild.pipeline.inspection import InspectionError, inspect_artifact

    try:
        inspection = inspect_artifact(
            Path(binary), crypto_libraries=tuple(crypto_libs or ("ssl", "crypto"))
        )
    except InspectionError as e:
        console.print(f"[red]Inspection failed ({e.code}): {e}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        typer.echo(json.dumps(inspection.to_dict(), indent=2))
        return

    console.print(f"[bold]{binary}[/bold]")
    console.print(f"  Class:       {inspection.elf_class}")
    console.print(f"  Machine:     {inspection.machine}")
    console.print(f"  Type:        {inspection.elf_type}")
    console.print(f"  Interpreter: {inspection.interpreter or 'none'}")
    console.print(f"  Needed:      {', '.join(inspection.needed) or 'none'}")
    linkage_color = "red" if inspection.crypto_needed else "green"
    console.print(
        f"  Crypto:      [{linkage_color}]{inspection.linkage.value}[/{linkage_color}]"
    )
    strip_color = "green" if inspection.stripped else "yellow"
    console.print(f"  Stripped:    [{strip_color}]{inspection.stripped}[/{strip_color}]")


if __name__ == "__main__":
    app()
