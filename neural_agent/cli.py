"""Command-line entry point.

    neural-agent [--adapter workspace_agent] [--host 127.0.0.1] [--port 8787]

Every flag falls back to a ``NEURAL_AGENT_<FLAG>`` environment variable, and a
``.env`` in the working directory is loaded before the defaults are read. The
port has one more fallback: the adapter's runtime config
(``NEURAL_COMPUTER_SERVER_PORT``), then 8787.
"""

import argparse
import asyncio
import importlib
import logging
import os
import signal
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("neural_agent")

DEFAULT_PORT = 8787
LOOPBACK_HOSTS = frozenset({"127.0.0.1", "localhost", "::1"})
# Per-request loggers that bury turn logs at INFO.
NOISY_LOGGERS = ("aiohttp.access", "LiteLLM")


def _env(flag: str, fallback: str = "") -> str:
    return os.environ.get(f"NEURAL_AGENT_{flag}", "").strip() or fallback


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="neural-agent",
        description="Sandboxed agent-execution backend with a streaming tool loop",
    )
    parser.add_argument(
        "--adapter",
        default=_env("ADAPTER", "workspace_agent"),
        help="Adapter module: a name under neural_agent.adapters, or any importable module exporting Adapter",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"HTTP port (default: the adapter's runtime config, then {DEFAULT_PORT})",
    )
    parser.add_argument("--host", default=_env("HOST", "127.0.0.1"), help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--token", default=_env("TOKEN"), help="Bearer token required on non-public routes")
    parser.add_argument(
        "--config",
        default=_env("CONFIG"),
        help="JSON runtime config file; overrides NEURAL_COMPUTER_* environment values",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    args = parser.parse_args(argv)
    if args.port is not None and not 0 < args.port < 65536:
        parser.error(f"--port must be between 1 and 65535, got {args.port}")
    return args


def _adapter_modules(name: str) -> list[str]:
    if "." in name:
        return [name]
    return [f"neural_agent.adapters.{name}", name]


def _load_adapter(name: str):
    """Return the ``Adapter`` class of the first adapter module that exists.

    Built-in adapters shadow a bare module of the same name on ``sys.path``.
    A module that exists but fails to import, or exports no ``Adapter``,
    stops the lookup instead of falling through.
    """
    tried = []
    for module_name in _adapter_modules(name):
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError as exc:
            missing = exc.name or ""
            if missing != module_name and not module_name.startswith(missing + "."):
                raise SystemExit(f"Error: adapter module '{module_name}' failed to import: {exc}") from exc
            tried.append(module_name)
            continue
        adapter_cls = getattr(module, "Adapter", None)
        if adapter_cls is None:
            raise SystemExit(f"Error: module '{module_name}' does not export an 'Adapter' class")
        return adapter_cls
    raise SystemExit(f"Error: could not load adapter '{name}' (tried {', '.join(tried)})")


def _resolve_port(args: argparse.Namespace, adapter) -> int:
    if args.port is not None:
        return args.port
    config = getattr(adapter, "config", None)
    return getattr(config, "port", None) or DEFAULT_PORT


def _version() -> str:
    try:
        return pkg_version("neural-agent")
    except PackageNotFoundError:
        return "dev"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )
    if not verbose:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


async def _serve(args: argparse.Namespace) -> None:
    from .server import AgentServer

    adapter = _load_adapter(args.adapter)()
    logger.info("Initializing adapter '%s'...", args.adapter)
    await adapter.initialize(config_path=args.config or None)

    port = _resolve_port(args, adapter)
    if not args.token and args.host not in LOOPBACK_HOSTS:
        logger.warning("Serving on %s without --token; every non-health route is open", args.host)
    server = AgentServer(adapter=adapter, host=args.host, port=port, token=args.token or None)

    stop_event = asyncio.Event()

    def _on_signal(sig: signal.Signals) -> None:
        logger.info("Received %s", sig.name)
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig)

    try:
        await server.start()
        logger.info(
            "neural-agent %s ready  adapter=%s  bind=%s:%s  auth=%s",
            _version(), args.adapter, args.host, port, "on" if args.token else "off",
        )
        await stop_event.wait()
        logger.info("Shutting down...")
    finally:
        await server.stop()
        await adapter.shutdown()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    if args.version:
        print(f"neural-agent {_version()}")
        return
    _configure_logging(args.verbose)
    asyncio.run(_serve(args))


if __name__ == "__main__":
    main()
