"""prgate Server — FastAPI application that ties all components together.

Startup sequence:
1. Load .prgate/ config
2. Initialize SQLite tracker
3. Start GitHub client, build policy store, dispatcher and coordinator
4. Recover open PRs from GitHub
5. Start Event Router consumer loop
6. Start Reconciliation Loop
7. Begin accepting webhooks

Shutdown:
1. Stop accepting webhooks
2. Stop router and cancel in-flight dispatches
3. Close database
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException

from prgate.config import PolicyConfig, PRGateConfig, load_config
from prgate.coordinator import ReviewCoordinator
from prgate.dispatcher import Dispatcher
from prgate.errors import UnknownPullRequest
from prgate.event_router import EventRouter
from prgate.github_client import GitHubClient
from prgate.models import PREvent
from prgate.policy import PolicyResolver, PolicyStore
from prgate.reconciliation import ReconciliationLoop
from prgate.recovery import recover_on_startup
from prgate.tracker import AssignmentTracker
from prgate.webhook import configure as configure_webhook
from prgate.webhook import router as webhook_router

logger = logging.getLogger(__name__)


class PRGateServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(self, repo_root: Path | None = None):
        self.repo_root = repo_root or Path.cwd()
        config_dir = os.environ.get("PRGATE_CONFIG_DIR", "").strip()
        self.config_dir = Path(config_dir) if config_dir else self.repo_root / ".prgate"

        # Components (initialized in start())
        self.config: PRGateConfig | None = None
        self.tracker: AssignmentTracker | None = None
        self.github: GitHubClient | None = None
        self.policy: PolicyStore | None = None
        self.event_queue: asyncio.Queue[PREvent] | None = None
        self.router: EventRouter | None = None
        self.dispatcher: Dispatcher | None = None
        self.coordinator: ReviewCoordinator | None = None
        self.reconciliation: ReconciliationLoop | None = None
        self._sighup_installed = False

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        logger.info("prgate server starting (repo=%s)", self.repo_root)

        # 1. Load config
        self.config = load_config(self.config_dir)
        logger.info(
            "Loaded %d policy rule(s) for %s",
            len(self.config.policy.rules),
            self.config.project.full_name or "any repository",
        )

        # 2. Initialize tracker (container-local disk)
        data_dir = Path(os.environ.get("PRGATE_DATA_DIR") or str(self.repo_root / ".prgate-data"))
        data_dir.mkdir(parents=True, exist_ok=True)
        db_path = str(data_dir / "tracker.db")
        logger.info("Tracker DB path: %s", db_path)

        self.tracker = AssignmentTracker(
            db_path, dismiss_stale_approvals=self.config.policy.dismiss_stale_approvals
        )
        await self.tracker.initialize()

        # 3. GitHub client + core components
        self.github = GitHubClient(
            app_id=os.environ.get("GITHUB_APP_ID"),
            private_key=os.environ.get("GITHUB_PRIVATE_KEY"),
            webhook_secret=os.environ.get("GITHUB_WEBHOOK_SECRET"),
            installation_id=os.environ.get("GITHUB_INSTALLATION_ID"),
        )
        await self.github.start()

        self.policy = PolicyStore(
            PolicyResolver.from_config(self.config.policy), loader=self._load_policy
        )
        self.dispatcher = Dispatcher(self.github, self.tracker, self.config.dispatch)
        self.event_queue = asyncio.Queue(maxsize=1000)
        self.router = EventRouter(self.event_queue, self.tracker)
        self.coordinator = ReviewCoordinator(
            self.config, self.policy, self.tracker, self.dispatcher, self.github
        )
        self.coordinator.register_handlers(self.router)

        # 4. Recover PRs opened or updated while we were down
        if self.config.runtime.recover_on_startup and self.github.has_credentials:
            try:
                summary = await recover_on_startup(
                    self.config, self.tracker, self.github, self.coordinator
                )
                logger.info("Startup recovery: %s", summary)
            except Exception:
                logger.exception("Startup recovery failed — continuing with tracked state")
        elif self.config.runtime.recover_on_startup:
            logger.info("GitHub App credentials not set — skipping startup recovery")

        # 5. Wire webhook endpoint (single-tenant scope check)
        configure_webhook(
            self.event_queue,
            self.github,
            expected_repo_full_name=self.config.project.full_name,
            rate_limit_max=self.config.runtime.webhook_rate_limit,
        )

        # 6. Start background loops
        self.reconciliation = ReconciliationLoop(self.config, self.tracker, self.dispatcher)
        await self.router.start()
        await self.reconciliation.start()
        self._install_sighup()

        logger.info("prgate server started successfully")

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("prgate server shutting down")

        self._remove_sighup()
        if self.reconciliation:
            await self.reconciliation.stop()
        if self.router:
            await self.router.stop()
        if self.dispatcher:
            await self.dispatcher.stop()
        if self.github:
            await self.github.close()
        if self.tracker:
            await self.tracker.close()

        logger.info("prgate server stopped")

    # ── Policy reload ────────────────────────────────────────────────────

    def _load_policy(self) -> PolicyConfig:
        return load_config(self.config_dir).policy

    def reload_policy(self) -> bool:
        """Re-read policy rules from disk. In-flight assignments are untouched."""
        if self.policy is None:
            return False
        return self.policy.reload()

    def _install_sighup(self) -> None:
        if not hasattr(signal, "SIGHUP"):
            return
        try:
            asyncio.get_running_loop().add_signal_handler(signal.SIGHUP, self.reload_policy)
        except (NotImplementedError, RuntimeError, ValueError):
            # Not the main thread (e.g. under a test client)
            logger.debug("SIGHUP reload handler not installed")
            return
        self._sighup_installed = True

    def _remove_sighup(self) -> None:
        if self._sighup_installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGHUP)
            self._sighup_installed = False


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = PRGateServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(repo_root: Path | None = None) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = PRGateServer(repo_root)

    app = FastAPI(
        title="prgate",
        version="0.1.0",
        description="Policy-driven pull request review coordinator and merge gate",
        lifespan=lifespan,
    )
    app.state.server = _server

    app.include_router(webhook_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with operational metrics."""
        tracked = len(await _server.tracker.list_pull_requests()) if _server.tracker else 0
        return {
            "status": "ok",
            "project": _server.config.project.name if _server.config else None,
            "tracked_pull_requests": tracked,
            "queue_depth": _server.event_queue.qsize() if _server.event_queue else 0,
            "active_lanes": len(_server.router.active_lanes()) if _server.router else 0,
            "last_event_time": _server.router.last_event_time if _server.router else None,
            "policy_version": _server.policy.version if _server.policy else None,
        }

    @app.get("/pulls")
    async def list_pulls():
        """List all tracked pull requests."""
        if not _server.tracker:
            return {"pull_requests": []}
        prs = await _server.tracker.list_pull_requests()
        return {"pull_requests": [pr.model_dump(mode="json") for pr in prs]}

    @app.get("/pulls/{owner}/{repo}/{number}")
    async def get_gate(owner: str, repo: str, number: int):
        """Current merge gate decision for one PR."""
        if not _server.coordinator:
            raise HTTPException(status_code=503, detail="Server not started")
        try:
            gate = await _server.coordinator.gate_state(f"{owner}/{repo}", number)
        except UnknownPullRequest as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return gate.model_dump(mode="json")

    @app.post("/admin/reload")
    async def reload_policy():
        """Swap in the policy rules currently on disk."""
        if not _server.reload_policy():
            raise HTTPException(status_code=500, detail="Policy reload failed")
        return {"status": "reloaded", "version": _server.policy.version}

    return app
