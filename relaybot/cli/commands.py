"""CLI commands for relaybot."""

import asyncio
import signal
import sys

import typer
from rich.console import Console
from rich.table import Table

from relaybot import __logo__, __version__

app = typer.Typer(
    name="relaybot",
    help=f"{__logo__} relaybot - XMTP front end for a backend agent",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} relaybot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """relaybot - XMTP front end for a backend agent."""
    pass


def _load_settings():
    from loguru import logger
    from pydantic import ValidationError

    from relaybot.settings import get_settings

    try:
        return get_settings()
    except ValidationError as e:
        missing = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        console.print(f"[red]✗[/red] Invalid configuration: {missing}")
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)


def _configure_logging(settings, verbose: bool = False) -> None:
    """stderr plus rotating error/combined log files."""
    from loguru import logger

    from relaybot.utils.helpers import ensure_dir

    if not settings.enable_logging:
        level = "ERROR"
    elif verbose or settings.debug:
        level = "DEBUG"
    else:
        level = "INFO"

    logger.remove()
    logger.add(sys.stderr, level=level)
    log_dir = ensure_dir(settings.log_dir)
    logger.add(log_dir / "error.log", level="ERROR", rotation="10 MB", retention=5)
    logger.add(log_dir / "combined.log", level=level, rotation="10 MB", retention=5)
    logger.enable("relaybot")


def _make_backend(settings):
    from relaybot.providers.backend import BackendClient

    return BackendClient(
        api_url=settings.agent_api_url,
        default_agent_id=settings.default_agent_id,
        service_url=settings.service_url,
        timeout=settings.backend_timeout_seconds,
        chain_id=settings.chain_id,
    )


# ============================================================================
# Gateway
# ============================================================================


async def _run_gateway(settings, client, *, port: int, mappings, backend) -> int:
    """Run the gateway until a signal, a crashed task or a restart request.

    Returns the process exit status: 0 for a clean stop, 1 when the backend
    is down at boot, a task crashed, or the message store was reset.
    """
    from loguru import logger

    from relaybot.agent.coalescer import CoalescingScheduler
    from relaybot.agent.dispatcher import DispatchPolicy, TurnDispatcher
    from relaybot.bus.router import EventRouter, log_handler_error, logging_middleware, make_message_filter
    from relaybot.health.staleness import StoreRecovery
    from relaybot.providers.vision import VisionAnalyzer
    from relaybot.services.reply import ReplyService
    from relaybot.storage.database import create_all_tables, dispose_engine, get_session_factory
    from relaybot.storage.greeted import GreetedGroupsStore

    if not await backend.health_check():
        if settings.require_backend_at_boot:
            logger.error(f"Backend at {backend.api_url} is unreachable, refusing to start")
            console.print(f"[red]✗[/red] Backend unreachable: {backend.api_url}")
            return 1
        logger.warning("Backend health check failed, continuing anyway")

    stop_event = asyncio.Event()
    exit_code = 0

    def _request_restart() -> None:
        nonlocal exit_code
        exit_code = 1
        stop_event.set()

    recovery = StoreRecovery(client.db_path, on_restart=_request_restart)
    coalescer = CoalescingScheduler(settings.batch_delay_seconds)

    try:
        await create_all_tables(settings)
        logger.info("Database tables ensured")
    except Exception as e:
        logger.warning(f"Database setup failed, greeted groups will not persist: {e}")

    dispatcher = TurnDispatcher(
        client,
        backend=backend,
        vision=VisionAnalyzer(settings.vision_api_key, settings.vision_model),
        greeted=GreetedGroupsStore(get_session_factory(settings)),
        mappings=mappings,
        coalescer=coalescer,
        recovery=recovery,
        policy=DispatchPolicy.from_settings(settings),
    )
    router = EventRouter()
    router.use(logging_middleware)
    router.use(make_message_filter(client.inbox_id))
    router.on_error(log_handler_error)
    dispatcher.register(router)
    client.set_event_sink(router.dispatch)

    import uvicorn
    from relaybot.api.app import create_app

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(ReplyService(mappings, client), backend, settings),
            host=settings.http_host,
            port=port,
            log_level="warning",
        )
    )

    async def _evict_loop() -> None:
        while True:
            await asyncio.sleep(settings.mapping_cleanup_interval_seconds)
            try:
                mappings.evict_older_than(settings.mapping_max_age_hours)
                await mappings.save()
            except Exception as e:
                logger.error(f"Mapping cleanup failed: {e}")

    def _watch(task: asyncio.Task) -> None:
        nonlocal exit_code
        if task.cancelled():
            return
        if task.exception() is None:
            # uvicorn may swallow SIGTERM itself and return from serve()
            if task.get_name() == "http":
                stop_event.set()
            return
        logger.opt(exception=task.exception()).error(f"{task.get_name()} crashed")
        exit_code = 1
        stop_event.set()

    tasks = [
        asyncio.create_task(server.serve(), name="http"),
        asyncio.create_task(client.start(), name="client"),
        asyncio.create_task(_evict_loop(), name="evict"),
    ]
    for task in tasks:
        task.add_done_callback(_watch)
    console.print(f"[green]✓[/green] Reply API on :{port}")

    # Register SIGTERM handler for Docker / systemd graceful stop
    loop = asyncio.get_running_loop()
    signals = (signal.SIGTERM, signal.SIGINT)
    for sig in signals:
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await stop_event.wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass

    console.print("\nShutting down...")
    server.should_exit = True
    await coalescer.shutdown()
    await dispatcher.drain()
    try:
        await client.stop()
    except Exception as e:
        logger.error(f"Error stopping client: {e}")
    tasks[2].cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    for sig in signals:
        loop.remove_signal_handler(sig)
    await mappings.save()
    await dispose_engine()

    if recovery.needs_restart or exit_code:
        logger.info("Exiting with status 1 so the supervisor restarts the process")
        return 1
    return 0


@app.command()
def gateway(
    port: int = typer.Option(None, "--port", "-p", help="HTTP port (default: RELAYBOT_HTTP_PORT)"),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging"),
):
    """Start the XMTP client, reply API and maintenance loop."""
    from loguru import logger

    from relaybot.channels.base import load_client_factory
    from relaybot.errors import ClientFactoryError
    from relaybot.session.mappings import MappingStore

    settings = _load_settings()
    _configure_logging(settings, verbose)
    bind_port = port or settings.http_port

    console.print(f"{__logo__} Starting relaybot gateway ({settings.xmtp_env}) on port {bind_port}...")
    logger.info(
        f"Config: env={settings.xmtp_env} backend={settings.agent_api_url} "
        f"agent={settings.default_agent_id} wallet_key=...{settings.wallet_key[-8:]}"
    )

    try:
        factory = load_client_factory(settings.client_factory)
        client = factory(settings)
    except ClientFactoryError as e:
        console.print(f"[red]✗[/red] {e}")
        logger.error(f"Cannot create messaging client: {e}")
        raise typer.Exit(1)

    mappings = MappingStore(settings.mapping_snapshot_path)
    mappings.load()

    code = asyncio.run(
        _run_gateway(
            settings,
            client,
            port=bind_port,
            mappings=mappings,
            backend=_make_backend(settings),
        )
    )
    if code:
        raise typer.Exit(code)


# ============================================================================
# Status / maintenance
# ============================================================================


@app.command()
def status():
    """Show relaybot configuration and backend health."""
    settings = _load_settings()

    console.print(f"{__logo__} relaybot Status\n")

    table = Table(show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("XMTP env", settings.xmtp_env)
    table.add_row("Backend", settings.agent_api_url)
    table.add_row("Agent id", settings.default_agent_id)
    table.add_row("Mention filter", "on" if settings.uses_mention_filter else "off")
    table.add_row("Mentions", ", ".join(settings.agent_mentions))
    table.add_row("Reactions", settings.reaction_emoji if settings.enable_reactions else "off")
    table.add_row("Client factory", settings.client_factory or "[red]not set[/red]")
    table.add_row("Vision", "[green]✓[/green]" if settings.vision_api_key else "[dim]not set[/dim]")
    table.add_row("HTTP", f"{settings.http_host}:{settings.http_port}")
    table.add_row("State dir", str(settings.state_dir))
    table.add_row("Database", settings.resolved_database_url)
    console.print(table)

    healthy = asyncio.run(_make_backend(settings).health_check())
    console.print(f"Backend health: {'[green]✓[/green]' if healthy else '[red]✗[/red]'}")


@app.command("greeted-cleanup")
def greeted_cleanup(
    days: int = typer.Option(30, "--days", "-d", help="Forget groups greeted more than N days ago"),
):
    """Remove old entries from the greeted-groups table."""
    from relaybot.storage.database import create_all_tables, dispose_engine, get_session_factory
    from relaybot.storage.greeted import GreetedGroupsStore

    settings = _load_settings()
    _configure_logging(settings)

    async def run() -> int:
        await create_all_tables(settings)
        try:
            return await GreetedGroupsStore(get_session_factory(settings)).cleanup(days)
        finally:
            await dispose_engine()

    removed = asyncio.run(run())
    console.print(f"[green]✓[/green] Removed {removed} greeted group(s) older than {days} days")


if __name__ == "__main__":
    app()
