"""Policy Resolver — maps branch + changed paths to reviewers and workflows.

Resolution is a pure function of the rule set: the same (repository,
branch, paths, rules) always yields the same requirement and workflow
order. Rules are held in a tuple and never mutated; reloading builds a
new resolver and swaps it into the :class:`PolicyStore` in one step.

Combination semantics:

- Every rule whose repository, branch and path patterns match is
  combined: reviewers and workflows are unioned, the required approval
  count is the maximum.
- Specificity is the length of the literal prefix of ``path_pattern``.
  Matching rules are ordered most specific first (config order breaks
  ties) and workflow order follows that ordering.
- A rule flagged ``exclusive`` drops strictly less specific rules for the
  paths it matches. Equal specificity always combines.
- Disagreeing approval counts are reported as
  :class:`~prgate.errors.PolicyResolutionConflict` warnings.
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from prgate.config import PolicyConfig, PolicyDefaults, PolicyRule
from prgate.errors import PolicyResolutionConflict
from prgate.models import ReviewRequirement

logger = logging.getLogger(__name__)

_GLOB_CHARS = "*?["


def specificity(pattern: str) -> int:
    """Length of the literal prefix before the first glob metacharacter."""
    for i, ch in enumerate(pattern):
        if ch in _GLOB_CHARS:
            return i
    return len(pattern)


def glob_match(path: str, pattern: str) -> bool:
    """Case-sensitive glob match where ``*`` and ``**`` both cross ``/``.

    A leading ``**/`` also matches files at the repository root.
    """
    if fnmatch.fnmatchcase(path, pattern):
        return True
    if pattern.startswith("**/"):
        return fnmatch.fnmatchcase(path, pattern[3:])
    return False


@dataclass(frozen=True)
class CompiledRule:
    index: int
    name: str
    rule: PolicyRule
    specificity: int

    def matches_target(self, repository: str, branch: str) -> bool:
        return fnmatch.fnmatchcase(
            repository, self.rule.repository_pattern
        ) and fnmatch.fnmatchcase(branch, self.rule.branch_pattern)

    def matches_path(self, path: str) -> bool:
        return glob_match(path, self.rule.path_pattern)


@dataclass(frozen=True)
class Resolution:
    """Output of :meth:`PolicyResolver.resolve`."""

    requirement: ReviewRequirement
    workflows: tuple[str, ...] = ()
    conflicts: tuple[PolicyResolutionConflict, ...] = field(default=(), compare=False)


class PolicyResolver:
    """Immutable rule set with a pure ``resolve`` operation."""

    def __init__(self, rules: Iterable[PolicyRule], defaults: PolicyDefaults | None = None):
        compiled = []
        for i, rule in enumerate(rules):
            name = rule.name or f"{rule.path_pattern}@{rule.branch_pattern}"
            compiled.append(CompiledRule(i, name, rule, specificity(rule.path_pattern)))
        self._rules: tuple[CompiledRule, ...] = tuple(compiled)
        self._defaults = defaults or PolicyDefaults()

    @classmethod
    def from_config(cls, policy: PolicyConfig) -> PolicyResolver:
        return cls(policy.rules, policy.defaults)

    @property
    def rules(self) -> tuple[CompiledRule, ...]:
        return self._rules

    def resolve(
        self,
        repository: str,
        branch: str,
        paths: Iterable[str],
        *,
        number: int | None = None,
        revision: str | None = None,
    ) -> Resolution:
        """Resolve the review requirement and workflow list for a change set.

        Args:
            repository: owner/repo.
            branch: Target (base) branch of the PR.
            paths: Changed file paths, in order. Duplicates are ignored.
            number, revision: Only used to annotate conflict warnings.
        """
        candidates = [r for r in self._rules if r.matches_target(repository, branch)]

        selected: set[int] = set()
        for path in dict.fromkeys(paths):
            matching = [r for r in candidates if r.matches_path(path)]
            if not matching:
                continue
            exclusive = [r.specificity for r in matching if r.rule.exclusive]
            if exclusive:
                floor = max(exclusive)
                matching = [r for r in matching if r.specificity >= floor]
            selected.update(r.index for r in matching)

        if not selected:
            return self._default_resolution()

        ordered = sorted(
            (self._rules[i] for i in selected), key=lambda r: (-r.specificity, r.index)
        )

        reviewers: set[str] = set()
        workflows: list[str] = []
        for r in ordered:
            reviewers.update(r.rule.reviewers)
            for wf in r.rule.workflows:
                if wf not in workflows:
                    workflows.append(wf)

        counts = [r.rule.required_approvals for r in ordered]
        conflicts: tuple[PolicyResolutionConflict, ...] = ()
        if len(set(counts)) > 1:
            conflict = PolicyResolutionConflict(
                f"rules disagree on required approvals {counts}; using {max(counts)}",
                rules=[r.name for r in ordered],
                counts=counts,
                repository=repository,
                number=number,
                revision=revision,
            )
            logger.warning("Policy conflict: %s", conflict)
            conflicts = (conflict,)

        requirement = ReviewRequirement(
            reviewers=tuple(sorted(reviewers)),
            required_approvals=max(counts),
            rules=tuple(r.name for r in ordered),
        )
        return Resolution(requirement=requirement, workflows=tuple(workflows), conflicts=conflicts)

    def _default_resolution(self) -> Resolution:
        d = self._defaults
        return Resolution(
            requirement=ReviewRequirement(
                reviewers=tuple(sorted(set(d.reviewers))),
                required_approvals=d.required_approvals,
            ),
            workflows=tuple(dict.fromkeys(d.workflows)),
        )


class PolicyStore:
    """Holds the current resolver; reload swaps the whole object at once."""

    def __init__(
        self,
        resolver: PolicyResolver,
        loader: Callable[[], PolicyConfig] | None = None,
    ):
        self._resolver = resolver
        self._loader = loader
        self.version = 1

    @property
    def current(self) -> PolicyResolver:
        return self._resolver

    def swap(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver
        self.version += 1

    def reload(self) -> bool:
        """Rebuild the resolver from the loader. Keeps the old rules on failure."""
        if self._loader is None:
            logger.warning("Policy reload requested but no loader is configured")
            return False
        try:
            resolver = PolicyResolver.from_config(self._loader())
        except Exception:
            logger.exception("Policy reload failed — keeping version %d", self.version)
            return False
        self.swap(resolver)
        logger.info("Policy reloaded: version %d, %d rules", self.version, len(resolver.rules))
        return True
