"""Error taxonomy for prgate.

Every error carries the pull request coordinates (``owner/repo#number``
plus revision) so log lines and operator surfaces can be traced back to
a specific PR revision.
"""

from __future__ import annotations


def pr_ref(repository: str | None, number: int | None, revision: str | None = None) -> str:
    """Format PR coordinates as ``owner/repo#12@abc1234``."""
    ref = f"{repository or '?'}#{number if number is not None else '?'}"
    if revision:
        ref += f"@{revision[:12]}"
    return ref


class PRGateError(Exception):
    """Base class for all prgate errors."""

    def __init__(
        self,
        message: str,
        *,
        repository: str | None = None,
        number: int | None = None,
        revision: str | None = None,
    ):
        self.repository = repository
        self.number = number
        self.revision = revision
        self.message = message
        if repository is not None or number is not None:
            message = f"{pr_ref(repository, number, revision)}: {message}"
        super().__init__(message)


class MalformedEvent(PRGateError):
    """Webhook payload failed schema validation. Discarded, never retried."""


class UnknownPullRequest(PRGateError):
    """Mutation arrived for a PR that was never registered."""


class InvalidReviewer(PRGateError):
    """The platform rejected a reviewer request (4xx). Needs an operator."""

    def __init__(self, message: str, *, reviewers: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.reviewers = reviewers or []


class InvalidWorkflowRef(PRGateError):
    """The platform rejected a workflow trigger (4xx). Needs an operator."""

    def __init__(self, message: str, *, workflow: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.workflow = workflow


class TransientDispatchFailure(PRGateError):
    """Network or 5xx failure that outlived the retry budget."""

    def __init__(self, message: str, *, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.attempts = attempts


class PolicyResolutionConflict(PRGateError):
    """Overlapping rules disagree on the required approval count.

    Not raised: returned alongside a resolution and logged as a warning.
    The maximum count wins.
    """

    def __init__(self, message: str, *, rules: list[str], counts: list[int], **kwargs):
        super().__init__(message, **kwargs)
        self.rules = rules
        self.counts = counts

    @property
    def resolved_count(self) -> int:
        return max(self.counts) if self.counts else 0
