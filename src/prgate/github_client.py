"""GitHub API client for prgate.

A GitHub App signs a short-lived JWT (PyJWT, RS256), trades it for an
installation token and sends every API call over one shared
``httpx.AsyncClient``. Errors are not swallowed here: non-2xx responses
raise ``httpx.HTTPStatusError`` and the dispatcher decides what is
retryable.

The client also watches the ``X-RateLimit-*`` headers. Once the remaining
quota drops to the reserve, calls queue behind a lock and wait for the
reset window instead of burning the last requests.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from typing import AsyncIterator

import httpx
import jwt as pyjwt

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"

TOKEN_TTL = 3500  # installation tokens live 1h; refresh a little early
TOKEN_REFRESH_MARGIN = 60
TOKEN_EXCHANGE_ATTEMPTS = 4
RATE_LIMIT_RESERVE = 50


class GitHubClient:
    """Async GitHub API client authenticated as a GitHub App installation."""

    def __init__(
        self,
        *,
        app_id: str | None = None,
        private_key: str | None = None,
        webhook_secret: str | None = None,
        installation_id: str | None = None,
        base_url: str = GITHUB_API,
    ):
        self.app_id = app_id
        self.private_key = private_key
        self.webhook_secret = webhook_secret
        self.installation_id = installation_id
        self.base_url = base_url

        self._token: str | None = None
        self._token_expires_at: float = 0
        self._token_lock: asyncio.Lock | None = None

        self.rate_limit_remaining: int | None = None
        self.rate_limit_reset: float = 0
        self._throttle_lock: asyncio.Lock | None = None

        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Open the shared HTTP client."""
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": "prgate/0.1.0",
            },
            timeout=httpx.Timeout(30.0, connect=10.0),
        )
        self._token_lock = asyncio.Lock()
        self._throttle_lock = asyncio.Lock()
        logger.info("GitHub client started (%s)", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("GitHub client not started")
        return self._client

    @property
    def has_credentials(self) -> bool:
        return bool(self.app_id and self.private_key and self.installation_id)

    # ── App authentication ───────────────────────────────────────────────

    def _app_jwt(self) -> str:
        issued = int(time.time()) - 30  # tolerate clock drift
        claims = {"iat": issued, "exp": issued + 540, "iss": str(self.app_id)}
        return pyjwt.encode(claims, self.private_key, algorithm="RS256")

    def _token_valid(self) -> bool:
        return bool(self._token) and time.time() < self._token_expires_at - TOKEN_REFRESH_MARGIN

    async def _installation_token(self) -> str:
        """Cached installation token; concurrent callers share one refresh."""
        if self._token_valid():
            return self._token
        if not self.has_credentials:
            raise RuntimeError(
                "GitHub App credentials not configured. "
                "Set GITHUB_APP_ID, GITHUB_PRIVATE_KEY, GITHUB_INSTALLATION_ID"
            )

        async with self._token_lock:
            if self._token_valid():
                return self._token

            path = f"/app/installations/{self.installation_id}/access_tokens"
            resp: httpx.Response | None = None
            for attempt in range(1, TOKEN_EXCHANGE_ATTEMPTS + 1):
                resp = await self.client.post(
                    path, headers={"Authorization": f"Bearer {self._app_jwt()}"}
                )
                if resp.status_code == 201:
                    self._token = resp.json()["token"]
                    self._token_expires_at = time.time() + TOKEN_TTL
                    logger.info("Token refreshed for installation %s", self.installation_id)
                    return self._token
                if resp.status_code < 500 and resp.status_code != 429:
                    break
                delay = 2**attempt
                logger.warning(
                    "Installation token exchange failed (%d), attempt %d/%d — retrying in %ds",
                    resp.status_code,
                    attempt,
                    TOKEN_EXCHANGE_ATTEMPTS,
                    delay,
                )
                await asyncio.sleep(delay)

            logger.error("Installation token exchange gave up: %s", resp.text[:200])
            resp.raise_for_status()
            raise RuntimeError(f"Unexpected token exchange response {resp.status_code}")

    # ── Webhook verification ─────────────────────────────────────────────

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Check an ``X-Hub-Signature-256`` header against the raw body.

        With no secret configured every delivery is accepted (local
        development only).
        """
        if not self.webhook_secret:
            logger.warning("No webhook secret configured — accepting unsigned delivery")
            return True
        scheme, _, digest = signature.partition("=")
        if scheme != "sha256" or not digest:
            return False
        mac = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256)
        return hmac.compare_digest(mac.hexdigest(), digest)

    # ── Requests ─────────────────────────────────────────────────────────

    def _record_rate_limit(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return
        self.rate_limit_remaining = int(remaining)
        self.rate_limit_reset = float(resp.headers.get("X-RateLimit-Reset", 0))
        if self.rate_limit_remaining <= RATE_LIMIT_RESERVE:
            logger.warning(
                "GitHub quota at reserve: %d requests left, window resets in %.0fs",
                self.rate_limit_remaining,
                max(0.0, self.rate_limit_reset - time.time()),
            )

    def _at_reserve(self) -> bool:
        return (
            self.rate_limit_remaining is not None
            and self.rate_limit_remaining <= RATE_LIMIT_RESERVE
            and self.rate_limit_reset > time.time()
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Authenticated request; raises ``httpx.HTTPStatusError`` on non-2xx."""
        if self._throttle_lock is not None and self._at_reserve():
            async with self._throttle_lock:
                if self.rate_limit_remaining == 0 and self._at_reserve():
                    wait = self.rate_limit_reset - time.time() + 1
                    logger.warning("GitHub quota exhausted — pausing %.1fs", wait)
                    await asyncio.sleep(wait)
                return await self._send(method, path, **kwargs)
        return await self._send(method, path, **kwargs)

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        token = await self._installation_token()
        headers = {"Authorization": f"token {token}", **kwargs.pop("headers", {})}
        resp = await self.client.request(method, path, headers=headers, **kwargs)
        self._record_rate_limit(resp)
        resp.raise_for_status()
        return resp

    # ── PR Operations ────────────────────────────────────────────────────

    async def _pages(self, path: str, *, per_page: int = 100, **params) -> AsyncIterator[list]:
        """Yield each page of a list endpoint until a short page."""
        page = 1
        while True:
            resp = await self._request(
                "GET", path, params={**params, "per_page": per_page, "page": page}
            )
            batch = resp.json()
            yield batch
            if len(batch) < per_page:
                return
            page += 1

    async def get_pull_request(self, owner: str, repo: str, pr_number: int) -> dict:
        resp = await self._request("GET", f"/repos/{owner}/{repo}/pulls/{pr_number}")
        return resp.json()

    async def list_pull_requests(
        self,
        owner: str,
        repo: str,
        *,
        state: str = "open",
        per_page: int = 100,
    ) -> list[dict]:
        """List every pull request in ``state``, following pagination."""
        pulls: list[dict] = []
        async for batch in self._pages(
            f"/repos/{owner}/{repo}/pulls", per_page=per_page, state=state
        ):
            pulls.extend(batch)
        return pulls

    async def list_pull_request_files(
        self, owner: str, repo: str, pr_number: int, *, per_page: int = 100
    ) -> list[str]:
        """List the file paths changed in a pull request, following pagination.

        Renamed files contribute both the old and the new path.
        """
        paths: list[str] = []
        async for batch in self._pages(
            f"/repos/{owner}/{repo}/pulls/{pr_number}/files", per_page=per_page
        ):
            for f in batch:
                if f.get("previous_filename"):
                    paths.append(f["previous_filename"])
                paths.append(f["filename"])
        return list(dict.fromkeys(paths))

    async def list_pull_request_reviews(
        self, owner: str, repo: str, pr_number: int, *, per_page: int = 100
    ) -> list[dict]:
        """Submitted reviews of a pull request, oldest first."""
        reviews: list[dict] = []
        async for batch in self._pages(
            f"/repos/{owner}/{repo}/pulls/{pr_number}/reviews", per_page=per_page
        ):
            reviews.extend(batch)
        return reviews

    async def request_reviewers(
        self,
        owner: str,
        repo: str,
        pr_number: int,
        reviewers: list[str],
        *,
        idempotency_key: str | None = None,
    ) -> dict:
        """Request reviews from users (``org/team`` entries become team reviewers)."""
        users = [r for r in reviewers if "/" not in r]
        teams = [r.split("/", 1)[1] for r in reviewers if "/" in r]
        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else {}
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls/{pr_number}/requested_reviewers",
            json={"reviewers": users, "team_reviewers": teams},
            headers=headers,
        )
        return resp.json()

    async def trigger_workflow(
        self,
        owner: str,
        repo: str,
        workflow: str,
        ref: str,
        *,
        inputs: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> None:
        """Create a workflow_dispatch event (GitHub answers 204 No Content)."""
        payload: dict = {"ref": ref}
        if inputs:
            payload["inputs"] = inputs
        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else {}
        await self._request(
            "POST",
            f"/repos/{owner}/{repo}/actions/workflows/{workflow}/dispatches",
            json=payload,
            headers=headers,
        )

    async def create_commit_status(
        self,
        owner: str,
        repo: str,
        sha: str,
        *,
        state: str,
        context: str,
        description: str = "",
    ) -> dict:
        """Set a commit status. ``state`` is error, failure, pending or success."""
        resp = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/statuses/{sha}",
            json={"state": state, "context": context, "description": description[:140]},
        )
        return resp.json()
