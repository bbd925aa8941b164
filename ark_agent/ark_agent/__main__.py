import asyncio
import contextlib
import signal
import sys
import threading
from datetime import datetime, timezone

import uvicorn

from ark_agent.api import create_app
from ark_agent.audit import AuditEmitter
from ark_agent.broker import CredentialBroker
from ark_agent.config import AgentSettings, Config, ConfigError
from ark_agent.errors import AlreadyRunningError, LockError, PersistenceError
from ark_agent.gate import PolicyGateClient
from ark_agent.lockfile import LockFile
from ark_agent.logging import get_logger, setup_logging
from ark_agent.storage import Storage

logger = get_logger("ArkAgent")

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class AgentServer(uvicorn.Server):
    """
    uvicorn server that treats SIGINT and SIGTERM purely as a request to stop.

    Previous handlers are restored when serve() returns and captured signals
    are not re-raised.
    """

    @contextlib.contextmanager
    def capture_signals(self):
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        previous = {sig: signal.signal(sig, self.handle_exit) for sig in STOP_SIGNALS}
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)


class AgentDaemon:
    """
    Main class of the Ark agent.
    Owns the lock, the store and the HTTP server for one data directory.
    """

    def __init__(self, settings: AgentSettings):
        self.settings = settings
        self.lock = LockFile(settings.lock_path)
        self.storage = None
        self.auditor = None
        self.server = None

    def _build_server(self) -> AgentServer:
        """
        Wires store, gate, auditor and broker into the FastAPI app.
        """
        gate = PolicyGateClient(self.settings.backend_url, timeout=self.settings.policy_timeout)
        self.auditor = AuditEmitter(
            self.settings.backend_url,
            self.settings.user_id,
            timeout=self.settings.audit_timeout,
            max_in_flight=self.settings.audit_max_in_flight,
        )
        broker = CredentialBroker(self.settings, self.storage, gate, self.auditor)
        app = create_app(self.settings, broker)
        config = uvicorn.Config(
            app,
            host=self.settings.host,
            port=self.settings.port,
            log_config=None,
            access_log=False,
            timeout_graceful_shutdown=self.settings.shutdown_grace,
        )
        return AgentServer(config)

    def _record_startup(self):
        self.storage.set_config("agent.version", self.settings.version)
        self.storage.set_config(
            "agent.started_at", datetime.now(timezone.utc).isoformat()
        )

    async def run(self):
        """
        Serves until SIGINT/SIGTERM, then drains audits, closes the store
        and releases the lock, in that order.
        """
        self.lock.acquire()
        try:
            self.storage = Storage(self.settings.db_path)
            self._record_startup()
            self.server = self._build_server()
            logger.info(
                f"Ark agent {self.settings.version} listening on "
                f"http://{self.settings.host}:{self.settings.port} "
                f"(data dir {self.settings.data_dir}, backend {self.settings.backend_url})"
            )
            await self.server.serve()
            logger.info("Shutting down agent...")
        finally:
            await self._shutdown()
        logger.info("Agent stopped")

    async def _shutdown(self):
        # The lock is released even if draining or closing fails or is cancelled
        try:
            if self.auditor is not None:
                await self.auditor.drain(timeout=self.settings.audit_timeout)
        finally:
            try:
                if self.storage is not None:
                    self.storage.close()
            finally:
                try:
                    self.lock.release()
                except LockError as e:
                    logger.error(f"Failed to release lock: {e}")


def main():
    """
    Entry point for ark-agent.
    """
    try:
        config = Config()
        setup_logging(config.data)
        settings = AgentSettings.from_config(config)
        asyncio.run(AgentDaemon(settings).run())
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        raise SystemExit(1)
    except AlreadyRunningError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Use 'ark agent status' to check agent status.", file=sys.stderr)
        raise SystemExit(1)
    except LockError as e:
        logger.error(f"Failed to acquire lock: {e}")
        raise SystemExit(1)
    except PersistenceError as e:
        logger.error(f"Failed to initialize storage: {e}")
        raise SystemExit(1)
    except KeyboardInterrupt:
        logger.warning("Interrupted during shutdown")
        raise SystemExit(130)


if __name__ == "__main__":
    main()
