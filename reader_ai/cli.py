from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from reader_ai.cloud.gemini import GeminiClient
from reader_ai.cloud.keys import ApiKeyStore
from reader_ai.config import Settings, load_settings
from reader_ai.errors import InferenceFailure
from reader_ai.orchestrator import InferenceOutcome, OrchestratorState, build_orchestrator, request_from_article
from reader_ai.types import (
    InferenceRequest,
    ProviderId,
    SummarizeParams,
    SummaryLength,
    SummaryStyle,
    Task,
    TaskParameters,
    TranslateParams,
)
from reader_ai.utils.logging import setup_logging
from reader_ai.worker.progress import ProgressEvent


logger = logging.getLogger("reader_ai.cli")


def _print_state(state: OrchestratorState) -> None:
    print(f"[{state.value}]", file=sys.stderr)


def _print_progress(event: ProgressEvent) -> None:
    pct = f"{event.percent:5.1f}%" if event.percent is not None else "   ?  "
    print(f"  {pct} {event.status.value} {event.file or ''}", file=sys.stderr)


def _build_request(args: argparse.Namespace, task: Task, params: TaskParameters) -> InferenceRequest:
    path = Path(args.file)
    raw = path.read_text(encoding="utf-8")
    provider = ProviderId(args.provider) if args.provider else None
    if args.html or path.suffix.lower() in (".html", ".htm"):
        return request_from_article(str(path.resolve()), raw, task, params, provider)
    return InferenceRequest(text=raw, task=task, parameters=params, requested_provider=provider)


async def _run(settings: Settings, request: InferenceRequest) -> InferenceOutcome:
    orchestrator = build_orchestrator(settings)
    try:
        return await orchestrator.run(request, on_state=_print_state, on_progress=_print_progress)
    finally:
        await orchestrator.aclose()


def _report(outcome: InferenceOutcome) -> int:
    if outcome.ok and outcome.result is not None:
        print(outcome.result.output)
        print(f"-- {outcome.result.provider_used.value} ({outcome.result.model or 'unknown model'})", file=sys.stderr)
        return 0
    for cap in outcome.capabilities:
        print(f"  {cap.id.value}: {cap.availability.value}", file=sys.stderr)
    if outcome.failure is not None:
        print(f"error: {outcome.failure.message} ({outcome.failure.kind.value})", file=sys.stderr)
        if outcome.failure.retry_after:
            print(f"retry after {outcome.failure.retry_after:.0f}s", file=sys.stderr)
    return 1


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    uvicorn.run("reader_ai.api.app:create_app", factory=True, host=args.host, port=args.port)
    return 0


def cmd_summarize(args: argparse.Namespace, settings: Settings) -> int:
    params = SummarizeParams(
        length=SummaryLength.parse(args.length),
        style=SummaryStyle(args.style),
        output_language=args.language,
    )
    try:
        request = _build_request(args, Task.SUMMARIZE, params)
    except InferenceFailure as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 2
    return _report(asyncio.run(_run(settings, request)))


def cmd_translate(args: argparse.Namespace, settings: Settings) -> int:
    params = TranslateParams(target_language=args.target, source_language=args.source)
    try:
        request = _build_request(args, Task.TRANSLATE, params)
    except InferenceFailure as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 2
    return _report(asyncio.run(_run(settings, request)))


def cmd_probe(args: argparse.Namespace, settings: Settings) -> int:
    task = Task(args.task)
    params: TaskParameters
    if task is Task.TRANSLATE:
        params = TranslateParams(target_language=args.language or "es")
    else:
        params = SummarizeParams(output_language=args.language)

    async def _probe() -> None:
        orchestrator = build_orchestrator(settings)
        try:
            for cap in await orchestrator.prober.probe(task, params):
                detail = f" ({cap.detail})" if cap.detail else ""
                print(f"{cap.id.value:18} {cap.availability.value}{detail}")
        finally:
            await orchestrator.aclose()

    asyncio.run(_probe())
    return 0


def cmd_set_key(args: argparse.Namespace, settings: Settings) -> int:
    store = ApiKeyStore(settings.client.key_file)

    async def _validate(key: str) -> bool:
        client = GeminiClient(
            key,
            model=settings.cloud.direct_model,
            base_url=settings.cloud.base_url,
            timeout=settings.cloud.timeout_seconds,
        )
        try:
            return await client.validate_key()
        finally:
            await client.aclose()

    ok = asyncio.run(store.validate_and_store(args.key, _validate))
    print("API key validated and saved." if ok else "API key saved but could not be validated.")
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="reader-ai", description="Summaries and translations from whichever AI backend is usable")
    ap.add_argument("--config", default=None, help="Path to config.yaml (defaults to $READER_AI_CONFIG or repo root config.yaml)")
    ap.add_argument("--log-level", default=None, help="Override logging.level")
    sub = ap.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the summary proxy")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=cmd_serve)

    providers = [p.value for p in ProviderId]

    summ = sub.add_parser("summarize", help="Summarize a text or HTML file")
    summ.add_argument("file")
    summ.add_argument("--length", default="medium", choices=[x.value for x in SummaryLength])
    summ.add_argument("--style", default="tldr", choices=[x.value for x in SummaryStyle])
    summ.add_argument("--language", default=None, help="Output language code (e.g. es)")
    summ.add_argument("--provider", default=None, choices=providers)
    summ.add_argument("--html", action="store_true", help="Treat the file as article HTML")
    summ.set_defaults(func=cmd_summarize)

    tr = sub.add_parser("translate", help="Translate a text or HTML file")
    tr.add_argument("file")
    tr.add_argument("--target", required=True, help="Target language code")
    tr.add_argument("--source", default="auto", help="Source language code or 'auto'")
    tr.add_argument("--provider", default=None, choices=providers)
    tr.add_argument("--html", action="store_true", help="Treat the file as article HTML")
    tr.set_defaults(func=cmd_translate)

    probe = sub.add_parser("probe", help="Show which providers can serve a task right now")
    probe.add_argument("--task", default="summarize", choices=[t.value for t in Task])
    probe.add_argument("--language", default=None)
    probe.set_defaults(func=cmd_probe)

    key = sub.add_parser("set-key", help="Validate and store your own Gemini API key")
    key.add_argument("key")
    key.set_defaults(func=cmd_set_key)
    return ap


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)
    setup_logging(None, args.log_level or settings.logging.level)
    return args.func(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
