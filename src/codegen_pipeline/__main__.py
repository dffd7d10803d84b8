"""Entry point for `python -m codegen_pipeline` and the `codegen-pipeline` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
from pathlib import Path

from codegen_pipeline.errors import BuildError
from codegen_pipeline.executor import run_sequence
from codegen_pipeline.llm import ChatModelGenerationService
from codegen_pipeline.models import BuildSequence
from codegen_pipeline.pipelines import default_sequence
from codegen_pipeline.settings import RuntimeSettings
from codegen_pipeline.verifier import CommandVerifier

logger = logging.getLogger("codegen_pipeline")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a dependency-driven code generation pipeline")
    parser.add_argument("--project-name", required=True, help="Name of the project to generate")
    parser.add_argument("--description", default="", help="Short description of the project")
    parser.add_argument(
        "--sequence-file",
        type=Path,
        default=None,
        help="Optional JSON pipeline definition (staged or flat form); defaults to the built-in pipeline",
    )
    parser.add_argument("--database-type", default=None, help="Target database, e.g. SQLite or PostgreSQL")
    parser.add_argument("--model", default=None, help="Default generation model for the run")
    parser.add_argument("--output-root", type=Path, default=None, help="Directory generated projects are written to")
    parser.add_argument(
        "--template-dir", type=Path, default=None, help="Project template copied into the frontend directory"
    )
    parser.add_argument(
        "--backend-template-dir", type=Path, default=None, help="Project template copied into the backend directory"
    )
    parser.add_argument("--report-file", type=Path, default=None, help="Write the metrics report as canonical JSON")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def load_sequence(args: argparse.Namespace) -> BuildSequence:
    if args.sequence_file is None:
        return default_sequence(
            project_name=args.project_name,
            description=args.description,
            database_type=args.database_type,
            model=args.model,
        )
    if not args.sequence_file.is_file():
        raise FileNotFoundError(f"Sequence file does not exist: {args.sequence_file}")
    payload = json.loads(args.sequence_file.read_text(encoding="utf-8"))
    sequence = BuildSequence.from_dict(payload)
    overrides = {
        key: value
        for key, value in (("database_type", args.database_type), ("model", args.model))
        if value is not None
    }
    return dataclasses.replace(sequence, **overrides) if overrides else sequence


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        overrides = {
            name: str(value)
            for name, value in (
                ("output_root", args.output_root),
                ("template_dir", args.template_dir),
                ("backend_template_dir", args.backend_template_dir),
            )
            if value is not None
        }
        if overrides:
            settings = dataclasses.replace(settings, **overrides).normalized()
        sequence = load_sequence(args)
    except (OSError, ValueError, KeyError, BuildError) as exc:
        logger.error("Unable to load pipeline configuration: %s", exc)
        return 1

    try:
        context, summary = asyncio.run(
            run_sequence(
                sequence,
                generation=ChatModelGenerationService(),
                verifier=CommandVerifier.from_settings(settings),
                backend_verifier=CommandVerifier(
                    install_command=settings.install_argv,
                    build_command=settings.backend_build_argv,
                ),
                settings=settings,
                project_name=args.project_name,
                description=args.description,
            )
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Pipeline execution failed: %s", exc)
        return 1

    print(context.monitor.generate_text_report(sequence.id))
    if args.report_file is not None:
        context.monitor.export_report(sequence.id, args.report_file)
    print(f"success={summary.success}")
    if summary.aborted_step is not None:
        print(f"aborted_step={summary.aborted_step}")
    return 0 if summary.success else 1


if __name__ == "__main__":
    raise SystemExit(main())
