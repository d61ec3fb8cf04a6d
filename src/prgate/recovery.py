"""GitHub-based state reconciliation on server start.

Webhooks delivered while the service was down are lost. On startup the
tracker is reconciled against GitHub, the durable state layer:

  1. Open PRs the tracker does not know are registered (same path as
     re-registration after UnknownPullRequest)
  2. Tracked PRs whose head moved are re-registered at the new head
  3. Tracked PRs that are no longer open are evicted
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from prgate.config import PRGateConfig
    from prgate.coordinator import ReviewCoordinator
    from prgate.github_client import GitHubClient
    from prgate.tracker import AssignmentTracker

logger = logging.getLogger(__name__)


async def recover_on_startup(
    config: PRGateConfig,
    tracker: AssignmentTracker,
    github: GitHubClient,
    coordinator: ReviewCoordinator,
) -> dict[str, int]:
    """Full recovery sequence — called once at server start.

    Returns a summary dict with counts of each action taken.
    """
    summary = {"registered": 0, "refreshed": 0, "evicted": 0, "unchanged": 0}
    owner, repo = config.project.owner, config.project.repo
    if not owner or not repo:
        logger.info("No project owner/repo configured — skipping recovery")
        return summary

    repository = f"{owner}/{repo}"
    open_prs = await github.list_pull_requests(owner, repo, state="open")
    open_numbers = set()

    for data in open_prs:
        number = data["number"]
        open_numbers.add(number)
        tracked = await tracker.get_pull_request(repository, number)
        if tracked is not None and tracked.revision == data["head"]["sha"]:
            summary["unchanged"] += 1
            continue
        try:
            registered = await coordinator.register_from_github(data, key_suffix="recovery")
        except Exception:
            logger.exception("Recovery failed for %s#%d", repository, number)
            continue
        if registered is None:
            continue
        summary["refreshed" if tracked else "registered"] += 1

    for tracked in await tracker.list_pull_requests():
        if tracked.repository != repository or tracked.number in open_numbers:
            continue
        coordinator.dispatcher.cancel_pull_request(tracked.key)
        await tracker.close_pull_request(tracked.repository, tracked.number)
        summary["evicted"] += 1
        logger.info("Evicted %s — no longer open on GitHub", tracked.key)

    return summary
