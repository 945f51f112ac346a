"""Application bootstrap for nodeselector-notify.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → delivery → reconciler
              → health API

Shutdown is graceful: the reconciler stops consuming events first, then the
dispatcher gets ``shutdown_grace_seconds`` to finish in-flight deliveries,
then the webhook client and the K8s client are closed.  Each component's
stop error is caught and logged independently.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from nodeselector_notify.config import ConfigError, load_config
from nodeselector_notify.models.config import NotifierConfig
from nodeselector_notify.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from nodeselector_notify.collector import PodEventSource
    from nodeselector_notify.notifications import DeliveryDispatcher, WebhookTransport
    from nodeselector_notify.reconciler import Reconciler

_COMPONENT_STOP_TIMEOUT_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class NotifierApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    ``stop()`` is safe to call on an app that was never started or has
    already stopped.
    """

    def __init__(self, config: NotifierConfig | None = None) -> None:
        self.config: NotifierConfig | None = config

        self._api_client: Any = None
        self._source: PodEventSource | None = None
        self._transport: WebhookTransport | None = None
        self._dispatcher: DeliveryDispatcher | None = None
        self._reconciler: Reconciler | None = None
        self._health_server: Any = None

        self._background_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._stopped = asyncio.Event()
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        The caller (main()) turns this into a non-zero exit.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            try:
                self.config = load_config()
            except ConfigError as exc:
                raise _ComponentError("config", exc) from exc

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level, self.config.log.format, env_name=self.config.env_name)
        self._log = get_logger("app")
        self._log.info("nodeselector-notify starting", version=_version())

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Reconciler and delivery ----------------------------------
        await self._start_reconciler()

        # --- 5. Health API -----------------------------------------------
        await self._start_health()

        self._running = True
        self._log.info(
            "nodeselector-notify started",
            env=self.config.env_name,
            ignored_namespaces=sorted(self.config.watch.ignored_namespaces),
        )

    # ------------------------------------------------------------------
    # Component startup helpers
    # ------------------------------------------------------------------

    async def _start_k8s_client(self) -> None:
        """Configure kubernetes-asyncio (in-cluster, then kubeconfig) and probe the API."""
        assert self._log is not None
        assert self.config is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config
            from kubernetes_asyncio import client as k8s_client

            from nodeselector_notify.collector import PodEventSource

            try:
                k8s_config.load_incluster_config()
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
            source = PodEventSource(
                k8s_client.CoreV1Api(self._api_client),
                ignored_namespaces=self.config.watch.ignored_namespaces,
                watch_timeout=self.config.watch.watch_timeout_seconds,
            )
            await source.check_connectivity()
            self._source = source
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    async def _start_reconciler(self) -> None:
        """Build tracker, reconciler and delivery pipeline, then start them."""
        assert self._log is not None
        assert self.config is not None
        assert self._source is not None
        self._log.debug("starting reconciler")
        try:
            from nodeselector_notify.notifications import build_delivery
            from nodeselector_notify.reconciler import Reconciler
            from nodeselector_notify.tracker import NotificationTracker

            cfg = self.config
            reconciler = Reconciler(
                self._source,
                NotificationTracker.from_config(cfg.tracker),
                env_name=cfg.env_name,
                webhook_url=cfg.webhook.url,
                payload_format=cfg.webhook.payload_format,
                batch_threshold=cfg.delivery.batch_threshold,
                tick_interval=cfg.watch.tick_interval_seconds,
                resync_interval=cfg.watch.resync_interval_seconds,
            )
            transport, dispatcher = build_delivery(cfg, on_complete=reconciler.report_outcome)
            reconciler.bind_dispatcher(dispatcher)
            self._transport = transport
            self._dispatcher = dispatcher
            self._reconciler = reconciler

            await dispatcher.start()
            await reconciler.start()
            self._log.info("reconciler started")
        except Exception as exc:
            raise _ComponentError("reconciler", exc) from exc

    async def _start_health(self) -> None:
        """Serve /healthz and /readyz with uvicorn."""
        assert self._log is not None
        assert self.config is not None
        assert self._reconciler is not None
        if not self.config.health.enabled:
            self._log.info("health api disabled")
            return
        self._log.debug("starting health api")
        try:
            import uvicorn

            from nodeselector_notify.api import create_app

            health_app = create_app(self._reconciler, dispatcher=self._dispatcher)
            uv_config = uvicorn.Config(
                app=health_app,
                host="0.0.0.0",
                port=self.config.health.port,
                log_config=None,  # structlog handles all logging
                access_log=False,
            )
            server = uvicorn.Server(uv_config)
            task = asyncio.create_task(server.serve(), name="health-server")
            self._background_tasks.append(task)
            self._health_server = server
            self._log.info("health api started", port=self.config.health.port)
        except Exception as exc:
            raise _ComponentError("health", exc) from exc

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop all components in reverse startup order."""
        if self._stopped.is_set() or (not self._running and self._log is None):
            self._stopped.set()
            return

        log = self._log or get_logger("app")
        log.info("nodeselector-notify shutting down")
        self._running = False

        if self._health_server is not None:
            self._health_server.should_exit = True
        for task in reversed(self._background_tasks):
            if not task.done():
                task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()

        grace = self.config.shutdown_grace_seconds if self.config is not None else 10.0
        await self._stop_component("reconciler", self._reconciler)
        if self._dispatcher is not None:
            await self._stop_component("dispatcher", self._dispatcher, grace)
        await self._stop_component("webhook", self._transport)
        await self._stop_k8s_client()

        if self._reconciler is not None:
            log.info("nodeselector-notify stopped", tracked_pods=len(self._reconciler.tracker))
        else:
            log.info("nodeselector-notify stopped")
        self._stopped.set()

    async def _stop_component(self, name: str, component: object | None, *args: Any) -> None:
        """Call stop() on a component, catching all errors."""
        if component is None:
            return
        log = self._log or get_logger("app")
        stop_fn = getattr(component, "stop", None)
        if stop_fn is None:
            return
        timeout = _COMPONENT_STOP_TIMEOUT_SECONDS + (args[0] if args else 0)
        try:
            result = stop_fn(*args)
            if asyncio.iscoroutine(result):
                await asyncio.wait_for(result, timeout=timeout)
        except TimeoutError:
            log.warning("component stop timed out", component=name, timeout=timeout)
        except Exception as exc:
            log.error("component stop raised an error", component=name, error=str(exc))

    async def _stop_k8s_client(self) -> None:
        """Close the kubernetes-asyncio ApiClient connection pool."""
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))
        self._api_client = None


def _version() -> str:
    from nodeselector_notify import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config: NotifierConfig | None = None) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = NotifierApp(config)
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        await app.wait_stopped()
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        if app.running:
            await app.stop()
