from __future__ import annotations

import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Annotated

import typer
from memoria import AskResult, Memoria, MemoriaSettings
from memoria.config import resolve_openai_api_key
from memoria.errors import MemoriaConfigurationError, MemoriaNotFoundError
from memoria.repositories.run_repository import JsonFileRunRepository, RunRecord
from memoria.schemas.events import ErrorEvent, ReasoningStepEvent

app = typer.Typer(add_completion=False, help="Memoria CLI (SDK-powered).")

DEFAULT_STORE_PATH = Path.home() / ".memoria" / "history.json"
DEFAULT_USER_ID = "cli"


def _require_api_key(provided: str | None) -> str:
    try:
        return resolve_openai_api_key(provided)
    except MemoriaConfigurationError:
        raise typer.BadParameter(
            "Missing OpenAI API key. Provide --openai-api-key or set OPENAI_API_KEY."
        ) from None


def _print_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _store_path(store: Path | None) -> Path:
    if store is not None:
        return store
    configured = os.getenv("MEMORIA_HISTORY_PATH", "").strip()
    return Path(configured) if configured else DEFAULT_STORE_PATH


def _build_client(
    *,
    store: Path | None,
    openai_api_key: str | None = None,
    openai_base_url: str | None = None,
    model: str | None = None,
) -> Memoria:
    settings = MemoriaSettings.from_env()
    if model and model.strip():
        settings = dataclasses.replace(settings, chat_model=model.strip())
    return Memoria(
        openai_api_key=openai_api_key,
        openai_base_url=openai_base_url,
        settings=settings,
        repository=JsonFileRunRepository(_store_path(store)),
    )


def _record_payload(record: RunRecord) -> dict[str, object]:
    return {
        "run_id": record.run_id,
        "question": record.question,
        "resolved_question": record.resolved_question,
        "answer": record.answer,
        "answer_source": record.state.answer_source,
        "created_at": record.created_at.isoformat(),
    }


def _echo_result(result: AskResult, *, show_steps: bool) -> None:
    if show_steps:
        for event in result.events:
            if isinstance(event, ReasoningStepEvent):
                typer.echo(f"[{event.index}] {event.type}: {event.description}", err=True)
    if result.answer:
        typer.echo(result.answer)
    for event in result.events:
        if isinstance(event, ErrorEvent):
            typer.echo(f"Error: {event.message}", err=True)


UserOption = Annotated[
    str,
    typer.Option("--user", "-u", envvar="MEMORIA_USER_ID", help="User id owning the history."),
]
StoreOption = Annotated[
    Path | None,
    typer.Option(
        "--store",
        dir_okay=False,
        help="JSON history file (defaults to MEMORIA_HISTORY_PATH or ~/.memoria/history.json).",
    ),
]
ApiKeyOption = Annotated[
    str | None,
    typer.Option("--openai-api-key", envvar="OPENAI_API_KEY", help="OpenAI API key."),
]
BaseUrlOption = Annotated[
    str | None,
    typer.Option(
        "--openai-base-url",
        envvar="OPENAI_BASE_URL",
        help="OpenAI-compatible base URL (for example an Azure OpenAI v1 endpoint).",
    ),
]
ModelOption = Annotated[
    str | None,
    typer.Option("--model", help="Override MEMORIA_CHAT_MODEL for this run."),
]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Log pipeline details.")]


@app.command()
def ask(
    question: Annotated[str, typer.Argument(help="Question to answer.")],
    user: UserOption = DEFAULT_USER_ID,
    store: StoreOption = None,
    openai_api_key: ApiKeyOption = None,
    openai_base_url: BaseUrlOption = None,
    model: ModelOption = None,
    show_steps: Annotated[
        bool, typer.Option("--steps", help="Print reasoning steps to stderr.")
    ] = False,
    json_output: Annotated[bool, typer.Option("--json", help="Emit JSON output.")] = False,
    verbose: VerboseOption = False,
) -> None:
    """Answer one question using (and extending) the user's history."""

    _configure_logging(verbose)
    if not question.strip():
        raise typer.BadParameter("Question must not be empty.", param_hint="QUESTION")
    key = _require_api_key(openai_api_key)
    client = _build_client(
        store=store,
        openai_api_key=key,
        openai_base_url=openai_base_url,
        model=model,
    )

    result = client.ask(user, question)

    if json_output:
        _print_json(
            {
                "run_id": result.run_id,
                "status": result.state.status,
                "answer": result.answer,
                "answer_source": result.state.answer_source,
                "reused_run_id": result.state.reused_run_id,
                "resolved_question": result.state.resolved_question,
                "error": result.state.error,
                "events": [event.model_dump(mode="json") for event in result.events],
            }
        )
    else:
        _echo_result(result, show_steps=show_steps)

    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def chat(
    user: UserOption = DEFAULT_USER_ID,
    store: StoreOption = None,
    openai_api_key: ApiKeyOption = None,
    openai_base_url: BaseUrlOption = None,
    model: ModelOption = None,
    show_steps: Annotated[
        bool, typer.Option("--steps", help="Print reasoning steps to stderr.")
    ] = False,
    verbose: VerboseOption = False,
) -> None:
    """Interactive loop; follow-up questions can refer back to earlier answers."""

    _configure_logging(verbose)
    key = _require_api_key(openai_api_key)
    client = _build_client(
        store=store,
        openai_api_key=key,
        openai_base_url=openai_base_url,
        model=model,
    )

    typer.echo("Enter questions. Type 'exit' or 'quit' to leave.")

    while True:
        try:
            text = typer.prompt(">")
        except (EOFError, KeyboardInterrupt):
            typer.echo("\nBye.")
            raise typer.Exit(code=0) from None

        if text.strip().lower() in {"exit", "quit"}:
            raise typer.Exit(code=0)
        if not text.strip():
            continue

        _echo_result(client.ask(user, text), show_steps=show_steps)
        typer.echo("")


@app.command()
def history(
    user: UserOption = DEFAULT_USER_ID,
    store: StoreOption = None,
    page: Annotated[int, typer.Option("--page", min=1)] = 1,
    limit: Annotated[int, typer.Option("--limit", min=1, max=100)] = 10,
    search: Annotated[
        str | None, typer.Option("--search", help="Only runs whose question contains this.")
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Emit JSON output.")] = False,
) -> None:
    """List stored runs, newest first."""

    client = _build_client(store=store)
    result = client.list_runs(user, page=page, limit=limit, search=search)

    if json_output:
        _print_json(
            {
                "runs": [_record_payload(record) for record in result.runs],
                "total": result.total,
                "page": result.page,
                "total_pages": result.total_pages,
            }
        )
        return

    if not result.runs:
        typer.echo("No runs found.")
        return
    for record in result.runs:
        typer.echo(f"{record.run_id}  {record.created_at:%Y-%m-%d %H:%M}  {record.question}")
    typer.echo(f"Page {result.page}/{max(result.total_pages, 1)} ({result.total} run(s))")


@app.command()
def show(
    run_id: Annotated[str, typer.Argument(help="Run id to display.")],
    user: UserOption = DEFAULT_USER_ID,
    store: StoreOption = None,
    json_output: Annotated[bool, typer.Option("--json", help="Emit JSON output.")] = False,
) -> None:
    """Show one stored run."""

    client = _build_client(store=store)
    try:
        record = client.get_run(user, run_id)
    except MemoriaNotFoundError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(
            {
                **_record_payload(record),
                "reasoning_steps": [
                    step.model_dump(mode="json") for step in record.state.reasoning_steps
                ],
            }
        )
        return

    typer.echo(f"Question: {record.question}")
    if record.resolved_question:
        typer.echo(f"Resolved: {record.resolved_question}")
    typer.echo(f"Asked:    {record.created_at.isoformat()}")
    typer.echo("")
    typer.echo(record.answer)


@app.command()
def forget(
    run_id: Annotated[str | None, typer.Argument(help="Run id to delete.")] = None,
    user: UserOption = DEFAULT_USER_ID,
    store: StoreOption = None,
    forget_all: Annotated[
        bool, typer.Option("--all", help="Delete every stored run for the user.")
    ] = False,
) -> None:
    """Delete one stored run, or all of them with --all."""

    if forget_all == (run_id is not None):
        raise typer.BadParameter("Pass either a RUN_ID or --all.")

    client = _build_client(store=store)
    if forget_all:
        deleted = client.delete_all(user)
        typer.echo(f"Deleted {deleted} run(s).")
        return

    assert run_id is not None
    if not client.delete_run(user, run_id):
        typer.echo(f"Run {run_id!r} not found", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Deleted run {run_id}.")


@app.command()
def backfill(
    user: Annotated[
        str | None,
        typer.Option("--user", "-u", help="Limit to one user (default: every user)."),
    ] = None,
    store: StoreOption = None,
    openai_api_key: ApiKeyOption = None,
    openai_base_url: BaseUrlOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Embed stored runs that have no embedding yet."""

    _configure_logging(verbose)
    key = _require_api_key(openai_api_key)
    client = _build_client(store=store, openai_api_key=key, openai_base_url=openai_base_url)

    report = client.backfill_embeddings(user_id=user)
    typer.echo(
        f"Processed {report.processed} run(s): "
        f"{report.succeeded} embedded, {report.failed} failed."
    )
    for failed_id in report.failed_run_ids:
        typer.echo(f"  failed: {failed_id}", err=True)
    if report.failed:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
