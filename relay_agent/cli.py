"""
Command-line entry point.

Events go to stdout as JSON lines; logs go to stderr.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .agent import RelayAgent
from .batch import BatchRunner, load_requests
from .cancellation import CancellationToken
from .config import AgentConfig, load_config
from .errors import ConfigValidationError, ModelNotFoundError
from .monitoring.telemetry import TelemetryLogger
from .state.session_state import SessionStatus

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="relay-agent", description="Relay prompts to LLM providers with resilient streaming")
    parser.add_argument("-p", "--prompt", help="Prompt text (default: read from stdin)")
    parser.add_argument("-m", "--model", help="Model id, e.g. kilo/glm-5-free or glm-5-free")
    parser.add_argument("-c", "--config", help="Path to a YAML or JSON config file")
    parser.add_argument("--system-prompt", help="System prompt for the session")
    parser.add_argument("--dry-run", action="store_true", help="Use the echo provider; no network access")
    parser.add_argument("--verbose", action="store_true", help="Debug logging on stderr")
    parser.add_argument("--no-fallback", action="store_true", help="Never switch providers after a hard failure")
    parser.add_argument("--chunk-timeout-ms", type=int, help="Abort a stream after this much silence")
    parser.add_argument("--step-timeout-ms", type=int, help="Abort a step after this long")
    parser.add_argument("--max-steps", type=int, help="Maximum steps per session")
    parser.add_argument("--batch", help="YAML/JSON list of {prompt, model} requests to run concurrently")
    parser.add_argument("--ray", action="store_true", help="Run --batch sessions on Ray actors")
    return parser


def _load_dotenv(candidates: Sequence[Path]) -> None:
    """Load KEY=VALUE lines from the first existing .env without overriding the environment."""
    for env_path in candidates:
        if not env_path.exists():
            continue
        try:
            text = env_path.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            return
        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):].strip()
            if "=" not in line:
                continue
            k, v = line.split("=", 1)
            k = k.strip()
            v = v.strip().strip('"').strip("'")
            if k and v and k not in os.environ:
                os.environ[k] = v
        return


def apply_cli_overrides(config: AgentConfig, args: argparse.Namespace) -> AgentConfig:
    if args.model:
        config.model = args.model
    if args.system_prompt:
        config.system_prompt = args.system_prompt
    if args.dry_run:
        config.dry_run = True
    if args.verbose:
        config.verbose = True
    if args.no_fallback:
        config.routing.allow_fallback = False
    if args.chunk_timeout_ms is not None:
        if args.chunk_timeout_ms <= 0:
            raise ConfigValidationError("--chunk-timeout-ms must be positive")
        config.stream.chunk_timeout_ms = args.chunk_timeout_ms
    if args.step_timeout_ms is not None:
        if args.step_timeout_ms <= 0:
            raise ConfigValidationError("--step-timeout-ms must be positive")
        config.stream.step_timeout_ms = args.step_timeout_ms
    if args.max_steps is not None:
        if args.max_steps <= 0:
            raise ConfigValidationError("--max-steps must be positive")
        config.max_steps = args.max_steps
    return config


def _read_prompt(args: argparse.Namespace) -> Optional[str]:
    if args.prompt:
        return args.prompt
    if sys.stdin is None or sys.stdin.isatty():
        return None
    text = sys.stdin.read().strip()
    return text or None


def _install_signal_handlers(token: CancellationToken) -> None:
    loop = asyncio.get_running_loop()

    def _handle(signame: str) -> None:
        if token.shutdown_requested:
            token.cancel(f"{signame} received twice")
        else:
            token.request_shutdown(f"{signame} received")

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handle, sig.name)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("signal handlers unavailable for %s", sig)


async def _run_single(agent: RelayAgent, prompt: str, model: Optional[str]) -> int:
    token = CancellationToken()
    _install_signal_handlers(token)
    result = await agent.run_session(prompt, model=model, token=token)
    if result.status == SessionStatus.COMPLETED:
        return EXIT_OK
    if result.status == SessionStatus.CANCELLED:
        return EXIT_CANCELLED
    if isinstance(result.error, ModelNotFoundError):
        return EXIT_USAGE
    return EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    _load_dotenv([Path.cwd() / ".env"])

    try:
        config = apply_cli_overrides(load_config(args.config), args)
    except ConfigValidationError as exc:
        print(f"error: {exc.message}", file=sys.stderr)
        return EXIT_USAGE

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.batch:
        try:
            requests = load_requests(args.batch)
        except ConfigValidationError as exc:
            print(f"error: {exc.message}", file=sys.stderr)
            return EXIT_USAGE
        results = BatchRunner(config, use_ray=args.ray).run(requests)
        for payload in results:
            sys.stdout.write(json.dumps(payload, default=str) + "\n")
        sys.stdout.flush()
        return EXIT_OK if all(p.get("status") == SessionStatus.COMPLETED.value for p in results) else EXIT_FAILED

    prompt = _read_prompt(args)
    if not prompt:
        print("error: no prompt given (use -p or pipe text on stdin)", file=sys.stderr)
        return EXIT_USAGE

    stdout_events = TelemetryLogger(stream=sys.stdout)
    agent = RelayAgent(config, event_sinks=[stdout_events.log])
    try:
        return asyncio.run(_run_single(agent, prompt, config.model))
    finally:
        agent.close()


if __name__ == "__main__":
    sys.exit(main())
