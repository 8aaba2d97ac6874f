"""
main.py — Copilot Entry Point

Usage:
    python main.py                              # gateway on config host/port
    python main.py --port 9191                  # override the listening port
    python main.py --log-level DEBUG            # verbose logging
    python main.py --config path/to/config.yaml
"""

from __future__ import annotations

# ─────────────────────────────────────────────────────────────────────────────
# Load environment variables before anything reads settings
# ─────────────────────────────────────────────────────────────────────────────

from dotenv import load_dotenv
from pathlib import Path

ENV_PATH = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)

# ─────────────────────────────────────────────────────────────────────────────
import argparse
import asyncio
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from actions import ActionRegistry, ParameterValidator
from actions.builtin import register_builtin_actions
from agent.intent_resolver import IntentResolver, RetryPolicy
from agent.orchestrator import SessionOrchestrator
from brain.backend import ReasoningBackend, create_reasoning_backend
from conversation.context import ContextManager
from conversation.store import ConversationStore, InMemoryConversationStore
from domain.backend import DomainBackend, InMemoryDomainBackend
from gateway.connections import ConnectionManager
from gateway.server import GatewayServer
from ratelimit.limiter import RateLimiter


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="copilot",
        description="Supply-chain copilot — conversational orchestration gateway",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $COPILOT_CONFIG or config/config.yaml)",
    )
    parser.add_argument("--host", default=None, help="Override gateway.host")
    parser.add_argument("--port", type=int, default=None, help="Override gateway.port")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from config.settings import load_settings, ConfigError
    from observability.logger import setup_logging, get_logger
    from pydantic import ValidationError

    try:
        settings = load_settings(args.config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\nConfig validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(f"\nFailed to load config: {type(exc).__name__}: {exc}\n", file=sys.stderr)
        sys.exit(1)

    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("copilot.main")
    return settings, log


# ─────────────────────────────────────────────────────────────────────────────
# Wiring
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class Copilot:
    registry: ActionRegistry
    store: ConversationStore
    domain: DomainBackend
    reasoning: ReasoningBackend
    limiter: RateLimiter
    orchestrator: SessionOrchestrator
    connections: ConnectionManager

    async def close(self) -> None:
        await self.orchestrator.drain()
        await self.connections.close_all()
        await self.reasoning.close()
        await self.domain.close()
        await self.store.close()


def _build_store(settings) -> ConversationStore:
    ttl = settings.context.ttl_days * 86400
    if settings.store.backend == "sqlite":
        from conversation.sqlite_store import SQLiteConversationStore
        return SQLiteConversationStore(settings.store.sqlite_path, ttl_seconds=ttl)
    return InMemoryConversationStore(ttl_seconds=ttl)


def _build_domain(settings) -> DomainBackend:
    if settings.domain.backend == "http":
        from domain.http_backend import HttpDomainBackend
        return HttpDomainBackend(
            settings.domain.base_url,
            api_token=settings.domain_api_token,
            timeout=settings.domain.timeout_seconds,
        )
    return InMemoryDomainBackend()


async def build_copilot(
    settings,
    *,
    reasoning: Optional[ReasoningBackend] = None,
    domain: Optional[DomainBackend] = None,
    store: Optional[ConversationStore] = None,
) -> Copilot:
    """Construct every component from settings. The registry is frozen before return."""
    registry = register_builtin_actions(ActionRegistry())
    registry.freeze()

    store = store or _build_store(settings)
    await store.init()
    domain = domain or _build_domain(settings)
    reasoning = reasoning or create_reasoning_backend(settings, registry.definitions())

    validator = ParameterValidator()
    i = settings.intent
    resolver = IntentResolver(
        reasoning,
        registry,
        validator,
        min_confidence=i.min_confidence,
        timeout_seconds=i.timeout_seconds,
        policy=RetryPolicy(
            max_attempts=i.max_attempts,
            base_delay=i.base_delay,
            factor=i.backoff_factor,
            max_delay=i.max_delay,
        ),
        history_window=settings.orchestrator.history_window,
    )
    c = settings.context
    context_manager = ContextManager(
        store,
        reasoning,
        max_tokens=c.max_tokens,
        summarization_threshold=c.summarization_threshold,
        keep_recent=c.keep_recent,
        summary_max_tokens=c.summary_max_tokens,
        summary_timeout_seconds=settings.orchestrator.generation_timeout_seconds,
    )
    r = settings.rate_limit
    limiter = RateLimiter(
        messages_per_minute=r.messages_per_minute,
        burst_allowance=r.burst_allowance,
        tokens_per_day=r.tokens_per_day,
    )
    orchestrator = SessionOrchestrator.from_settings(
        settings,
        registry=registry,
        resolver=resolver,
        store=store,
        context_manager=context_manager,
        rate_limiter=limiter,
        domain_backend=domain,
        reasoning_backend=reasoning,
    )
    connections = ConnectionManager(orchestrator, store)
    return Copilot(
        registry=registry,
        store=store,
        domain=domain,
        reasoning=reasoning,
        limiter=limiter,
        orchestrator=orchestrator,
        connections=connections,
    )


async def _housekeeping(copilot: Copilot, log, interval: float = 300.0) -> None:
    """Periodically drop expired conversations, their locks and idle rate-limit windows."""
    while True:
        await asyncio.sleep(interval)
        await housekeeping_pass(copilot, log)


async def housekeeping_pass(copilot: Copilot, log) -> dict[str, int]:
    purged = await copilot.store.purge_expired()
    # Locks of connected conversations are recreated on their next message.
    locks = copilot.orchestrator.forget_idle()
    collected = await copilot.limiter.collect_garbage()
    log.debug("copilot.housekeeping", purged=purged, locks_dropped=locks, rate_limit_gc=collected)
    return {"purged": purged, "locks_dropped": locks, "rate_limit_gc": collected}


async def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings, log = bootstrap(args)

    log.info(
        "copilot.starting",
        reasoning_provider=settings.reasoning.provider,
        reasoning_model=settings.reasoning.model,
        store=settings.store.backend,
        domain=settings.domain.backend,
    )

    copilot = await build_copilot(settings)
    log.info("copilot.actions_registered", count=len(copilot.registry),
             actions=copilot.registry.list_names())

    server = GatewayServer(
        copilot.connections,
        copilot.orchestrator,
        host=args.host or settings.gateway.host,
        port=args.port or settings.gateway.port,
        max_connections=settings.gateway.max_connections,
        max_message_bytes=settings.gateway.max_message_bytes,
    )
    await server.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still raises.
            pass

    housekeeping = asyncio.create_task(_housekeeping(copilot, log))
    try:
        await stop.wait()
    finally:
        log.info("copilot.stopping")
        housekeeping.cancel()
        await server.shutdown()
        await copilot.close()
        log.info("copilot.stopped")
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    run()
