"""webrag - web-augmented answers from the command line.

Simple CLI for asking one question with live web context.
"""

import argparse
import asyncio
import sys

from webrag.agents.orchestrator import WebSearchPipeline
from webrag.llm_client import get_client
from webrag.models.errors import PipelineStageError, describe_failure
from webrag.models.events import PipelineStage, WebStatus
from webrag.research_core.scrape.service import ScrapeService, build_strategy
from webrag.services.prompt_builder import build_direct_messages


def print_status(status: WebStatus) -> None:
    if status.stage == PipelineStage.GENERATING_QUERIES:
        print("[~] Generating search queries...")
    elif status.stage == PipelineStage.ANALYZING_RESULTS:
        print("[~] Analyzing results...")
    elif status.stage == PipelineStage.SCRAPING:
        print(f"[~] Reading {len(status.urls)} pages:")
        for url in status.urls:
            print(f"    {url}")


async def ask(
    query: str,
    model: str | None = None,
    scraping_mode: str | None = None,
    use_web: bool = True,
) -> int:
    """Answer `query`, streaming the reply to stdout. Returns an exit code."""
    failures: list[BaseException] = []

    def on_chunk(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    def on_complete() -> None:
        print()

    def on_error(exc: BaseException) -> None:
        failures.append(exc)

    try:
        chat = get_client(model)
        if not use_web:
            handle = chat.stream_chat(
                build_direct_messages(query, []),
                on_chunk,
                on_complete,
                lambda exc: on_error(PipelineStageError("completion", exc)),
            )
            await handle.wait()
        else:
            scraper = ScrapeService(build_strategy(scraping_mode))
            pipeline = WebSearchPipeline(chat=chat, scraper=scraper)
            try:
                task = pipeline.run_search_and_stream(
                    query, [], on_chunk, on_complete, on_error, on_status=print_status
                )
                await task
            finally:
                await pipeline.aclose()
    except ValueError as exc:
        failures.append(exc)

    if failures:
        print(f"\n[!] {describe_failure(failures[0])}")
        return 1
    return 0


def main():
    parser = argparse.ArgumentParser(description="Answer a question with live web context")
    parser.add_argument("--query", "-q", required=True, help="Question to answer")
    parser.add_argument("--model", "-m", help="Model to use (default: from config)")
    parser.add_argument(
        "--scraping-mode",
        choices=("local", "reader"),
        help="Page scraping strategy (default: from config)",
    )
    parser.add_argument("--no-web", action="store_true", help="Answer without web search")

    args = parser.parse_args()

    sys.exit(asyncio.run(ask(args.query, args.model, args.scraping_mode, not args.no_web)))


if __name__ == "__main__":
    main()
