#!/usr/bin/env python3
"""
Nostr DVM Node
==============

[PIPELINE] Этот скрипт запускает обработчик задач NIP-90 (kind 5050):
- Загружает ключ узла из NOSTR_PRIVATE_KEY
- Подключается к relay и публикует объявление (kind 31990)
- Принимает запросы, вызывает LLM провайдер, публикует результаты

[MCP] С флагом --mcp вместо DVM запускается MCP сервер (stdio)
с инструментом chat_completion.

Использование:
    python main.py [--relay URL]... [--allowed-pubkey HEX] [--provider groq|echo]

Примеры:
    # Обслуживать только одного заказчика
    python main.py --allowed-pubkey <hex>

    # Локальный smoke-тест без Groq
    python main.py --provider echo --relay ws://localhost:7777 --no-advertise
"""

import argparse
import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

# Загрузка переменных окружения из .env до чтения конфигурации
load_dotenv()

from config import ConfigError, config
from agents import EchoProvider, GroqProvider, InferenceProvider
from core.crypto import Identity
from core.mcp_server import DVMMCPServer
from core.node import DVMNode

logger = logging.getLogger("dvm")


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not verbose:
        logging.getLogger("aiohttp").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Nostr DVM: LLM completions for NIP-90 kind 5050 job requests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run against the default relays
  python main.py

  # Custom relay set
  python main.py --relay wss://nos.lol --relay wss://relay.damus.io

  # MCP chat_completion tool over stdio
  python main.py --mcp
""",
    )
    parser.add_argument(
        "--relay", "-r",
        action="append",
        dest="relays",
        metavar="URL",
        help="Relay URL (repeatable, default: NOSTR_RELAYS or built-in list)",
    )
    parser.add_argument(
        "--allowed-pubkey",
        type=str,
        default=None,
        help="Only serve job requests from this pubkey (hex)",
    )
    parser.add_argument(
        "--provider",
        choices=("groq", "echo"),
        default="groq",
        help="Inference provider (default: groq)",
    )
    parser.add_argument(
        "--lookback-hours",
        type=float,
        default=None,
        help=f"Window for finding own past results (default: {config.dvm.lookback_hours})",
    )
    parser.add_argument(
        "--no-advertise",
        action="store_true",
        help="Do not publish the kind 31990 handler announcement",
    )
    parser.add_argument(
        "--mcp",
        action="store_true",
        help="Serve the chat_completion MCP tool over stdio instead of the DVM",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def apply_args(args: argparse.Namespace) -> None:
    """Перенести аргументы командной строки в конфигурацию."""
    if args.relays:
        config.relay.relays = list(dict.fromkeys(args.relays))
    if args.allowed_pubkey:
        config.dvm.allowed_pubkey = args.allowed_pubkey.strip()
    if args.lookback_hours is not None:
        config.dvm.lookback_hours = args.lookback_hours


def create_provider(name: str) -> InferenceProvider:
    if name == "echo":
        return EchoProvider()
    return GroqProvider(
        api_key=config.inference.groq_api_key,
        base_url=config.inference.groq_base_url,
        timeout=config.dvm.inference_timeout,
    )


async def run_mcp(provider: InferenceProvider) -> None:
    server = DVMMCPServer(provider=provider, models=config.inference.models)
    try:
        await server.run_stdio()
    finally:
        await provider.close()


async def run_node(identity: Identity, provider: InferenceProvider, advertise: bool) -> None:
    node = DVMNode(config, identity, provider, advertise=advertise)

    # Graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("[MAIN] Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            pass

    try:
        await node.start()
        logger.info(f"[MAIN] DVM running as {identity.pubkey}. Press Ctrl+C to stop.")
        await shutdown_event.wait()
    finally:
        await node.stop()
        logger.info("[MAIN] Shutdown complete")


async def main(argv=None) -> int:
    """
    Главная функция - точка входа.
    """
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    apply_args(args)

    try:
        provider = create_provider(args.provider)
    except ValueError as e:
        logger.error(f"[MAIN] {e}")
        return 2

    if args.mcp:
        await run_mcp(provider)
        return 0

    try:
        config.validate()
    except ConfigError as e:
        logger.error(f"[MAIN] Invalid configuration: {e}")
        await provider.close()
        return 2

    identity = Identity.from_hex(config.dvm.private_key)
    await run_node(identity, provider, advertise=not args.no_advertise)
    return 0


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
