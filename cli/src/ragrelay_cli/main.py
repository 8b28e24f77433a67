from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, Any, cast

import typer
from ragrelay import Passage, RagRelay, RagRelayConfigurationError
from ragrelay.client import OpenAIApi
from ragrelay.schemas.rag_chat import ErrorEvent, StreamEvent, TemperaturePreset
from ragrelay.services.model_capabilities import (
    TEMPERATURE_PRESETS,
    build_generation_config,
    lookup_capabilities,
)

app = typer.Typer(add_completion=False, help="ragrelay CLI: grounded answers over local passages.")


def _require_api_key(provided: str | None) -> str:
    if provided and provided.strip():
        return provided.strip()
    for env_name in ("OPENAI_API_KEY", "AZURE_OPENAI_API_KEY"):
        env = os.getenv(env_name, "").strip()
        if env:
            return env
    raise typer.BadParameter(
        "Missing OpenAI API key. Provide --openai-api-key or set OPENAI_API_KEY."
    )


def _temperature_preset(value: str) -> TemperaturePreset:
    normalized = value.strip().lower()
    if normalized not in TEMPERATURE_PRESETS:
        supported = "|".join(TEMPERATURE_PRESETS)
        raise typer.BadParameter(f"Invalid preset {value!r}. Use one of: {supported}.")
    return cast(TemperaturePreset, normalized)


def _print_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _load_passages(path: Path, *, session_id: str) -> list[Passage]:
    """Read one passage per JSONL line: ``text`` plus optional source metadata."""
    passages: list[Passage] = []
    for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            raise typer.BadParameter(f"{path}:{line_number} is not valid JSON: {exc}") from exc
        if not isinstance(record, dict) or not str(record.get("text", "")).strip():
            raise typer.BadParameter(f"{path}:{line_number} must be an object with a 'text' field")
        source_file_name = str(record.get("source_file_name") or record.get("source") or path.name)
        page_number = record.get("page_number")
        passages.append(
            Passage(
                document_id=str(record.get("document_id") or source_file_name),
                chunk_ordinal=len(passages),
                source_file_name=source_file_name,
                text=str(record["text"]),
                page_number=int(page_number) if page_number is not None else None,
                session_id=session_id,
            )
        )
    return passages


@app.command()
def ask(
    prompt: Annotated[str, typer.Argument(help="Question to answer.")],
    passages_file: Annotated[
        Path,
        typer.Option(
            "--passages",
            exists=True,
            readable=True,
            dir_okay=False,
            help="JSONL file of passages to search for this run (ephemeral store).",
        ),
    ],
    openai_api_key: Annotated[
        str | None,
        typer.Option("--openai-api-key", envvar="OPENAI_API_KEY", help="OpenAI API key."),
    ] = None,
    openai_base_url: Annotated[
        str | None,
        typer.Option("--openai-base-url", help="OpenAI-compatible base URL override."),
    ] = None,
    openai_api: Annotated[
        str | None,
        typer.Option("--openai-api", help="responses|chat_completions"),
    ] = None,
    model: Annotated[
        str | None,
        typer.Option("--model", help="Override RAGRELAY_CHAT_MODEL for this run."),
    ] = None,
    session_id: Annotated[
        str,
        typer.Option("--session-id", help="Session scope for retrieval."),
    ] = "cli",
    preset: Annotated[
        str,
        typer.Option("--preset", help="precise|normal|creative"),
    ] = "normal",
    max_tokens: Annotated[
        int | None,
        typer.Option("--max-tokens", min=1, help="Cap on generated tokens."),
    ] = None,
    tools: Annotated[
        list[str] | None,
        typer.Option("--tool", help="Tool to enable (repeatable), e.g. tavily_search."),
    ] = None,
    sse: Annotated[bool, typer.Option("--sse", help="Print raw SSE frames.")] = False,
    json_output: Annotated[bool, typer.Option("--json", help="Emit JSON output.")] = False,
    log_level: Annotated[str, typer.Option("--log-level", help="Python logging level.")] = "WARNING",
) -> None:
    """Load passages into an ephemeral store and stream a grounded answer."""

    logging.basicConfig(level=log_level.upper())
    key = _require_api_key(openai_api_key)
    try:
        client = RagRelay(
            openai_api_key=key,
            openai_base_url=openai_base_url,
            openai_api=cast(OpenAIApi | None, openai_api),
            model=model,
        )
    except RagRelayConfigurationError as exc:
        raise typer.BadParameter(str(exc)) from exc
    client.add_passages(_load_passages(passages_file, session_id=session_id))
    query = client.build_query(
        prompt,
        session_id=session_id,
        model=model,
        temperature_preset=_temperature_preset(preset),
        max_tokens=max_tokens,
        tools=tools or [],
    )

    if sse:

        async def _print_frames() -> None:
            async for frame in client.stream_sse(query):
                typer.echo(frame, nl=False)

        asyncio.run(_print_frames())
        return

    events: list[StreamEvent] = []

    async def _collect(event: StreamEvent) -> None:
        events.append(event)

    result = asyncio.run(client.answer(query, event_sink=_collect))

    if json_output:
        _print_json(
            {
                "session_id": result.session_id,
                "answer": result.accumulated_text,
                "tool_invocations": [r.model_dump() for r in result.tool_invocations],
                "events": [e.model_dump(by_alias=True) for e in events],
            }
        )
        return

    for event in events:
        if isinstance(event, ErrorEvent):
            typer.echo(f"warning: {event.error}", err=True)
    typer.echo(result.accumulated_text)


@app.command()
def capabilities(
    model: Annotated[str, typer.Argument(help="Model id, e.g. gpt-4.1-mini or openai/o3.")],
    preset: Annotated[
        str,
        typer.Option("--preset", help="precise|normal|creative"),
    ] = "normal",
    max_tokens: Annotated[int | None, typer.Option("--max-tokens", min=1)] = None,
) -> None:
    """Show the capability profile and generation config resolved for a model."""

    payload: dict[str, Any] = {
        "model": model,
        "capabilities": asdict(lookup_capabilities(model)),
        "generation_config": build_generation_config(
            model, temperature_preset=_temperature_preset(preset), max_tokens=max_tokens
        ),
    }
    _print_json(payload)


if __name__ == "__main__":
    app()
