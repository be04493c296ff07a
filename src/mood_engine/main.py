"""Application entrypoint — start the API server or run one-off commands."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import uvicorn

from mood_engine.config import get_settings
from mood_engine.logger import setup_logging


async def _train(user_id: str) -> dict:
    from mood_engine.calibration.pipeline import CalibrationPipeline
    from mood_engine.calibration.retrieval import RetrievalEngine
    from mood_engine.storage.database import dispose_engine, init_db
    from mood_engine.storage.repository import (
        AssociationRepository,
        CalibrationModelRepository,
        EntryRepository,
        EpisodeRepository,
    )

    settings = get_settings()
    await init_db()
    try:
        pipeline = CalibrationPipeline(
            entry_repo=EntryRepository(),
            model_repo=CalibrationModelRepository(),
            association_repo=AssociationRepository(),
            retrieval=RetrievalEngine(EpisodeRepository(), dimensions=settings.embedding_dimensions),
            settings=settings,
        )
        result = await pipeline.train(user_id)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)
    finally:
        await dispose_engine()


async def _evaluate(output: str | None) -> None:
    from mood_engine.research.evaluation import evaluate_users
    from mood_engine.storage.database import dispose_engine, init_db

    await init_db()
    try:
        df = await evaluate_users()
    finally:
        await dispose_engine()

    if output:
        df.to_csv(output, index=False)
        print(f"Wrote {len(df)} rows to {output}.")
    elif df.empty:
        print("No users with enough labelled entries.")
    else:
        print(df.to_string(index=False))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="mood-engine",
        description="Personalised mood calibration and hybrid prediction engine.",
    )
    sub = parser.add_subparsers(dest="command")

    # ── serve ─────────────────────────────────────────────────
    serve_parser = sub.add_parser("serve", help="Start the API server.")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    # ── init-db ───────────────────────────────────────────────
    sub.add_parser("init-db", help="Create database tables.")

    # ── train ─────────────────────────────────────────────────
    train_parser = sub.add_parser("train", help="Train one user's calibration model.")
    train_parser.add_argument("user_id")

    # ── evaluate ──────────────────────────────────────────────
    eval_parser = sub.add_parser("evaluate", help="Chronological holdout evaluation for all users.")
    eval_parser.add_argument("--output", default=None, help="Write results to this CSV file.")

    args = parser.parse_args(argv)
    settings = get_settings()
    setup_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run(
            "mood_engine.api.server:app",
            host=args.host or settings.api_host,
            port=args.port or settings.api_port,
            reload=args.reload,
        )
    elif args.command == "init-db":
        from mood_engine.storage.database import init_db

        asyncio.run(init_db())
        print("Database tables created.")
    elif args.command == "train":
        result = asyncio.run(_train(args.user_id))
        print(json.dumps(result, indent=2))
    elif args.command == "evaluate":
        asyncio.run(_evaluate(args.output))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
