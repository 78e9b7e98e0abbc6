"""Executor — run planned actions against the provider in dependency order."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from .context import Context
from .errors import ApplyError, CancellationError, ProviderError
from .plan import Action, ActionKind, Phase, Plan, diff_attributes
from .provider import Provider
from .refs import contains_unknown
from .resolve import Resolver
from .state import StateEntry, StateStore, Status

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


class ActionStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class ActionResult:
    """Final status of one planned action."""

    action: Action
    status: ActionStatus
    error: str | None = None
    provider_id: str | None = None

    @property
    def address(self) -> str:
        return self.action.address

    @property
    def key(self) -> str:
        return self.action.key


@dataclass
class ApplyResult:
    """Aggregate outcome of a run: every action's final status, in plan order."""

    results: list[ActionResult] = field(default_factory=list)
    values: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False

    def _with(self, status: ActionStatus) -> list[ActionResult]:
        return [r for r in self.results if r.status is status]

    @property
    def completed(self) -> list[ActionResult]:
        return self._with(ActionStatus.COMPLETED)

    @property
    def failed(self) -> list[ActionResult]:
        return self._with(ActionStatus.FAILED)

    @property
    def skipped(self) -> list[ActionResult]:
        return self._with(ActionStatus.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(r.status is ActionStatus.COMPLETED for r in self.results)

    def status_of(self, address: str) -> ActionStatus | None:
        """Status of the last action for ``address`` (the create step of a replace)."""
        found = [r.status for r in self.results if r.address == address]
        return found[-1] if found else None

    def raise_for_status(self) -> None:
        if self.failed:
            raise ApplyError(self)
        if self.cancelled:
            raise CancellationError(result=self)


class Executor:
    """Run a Plan with a bounded worker pool.

    An action starts once every action it requires has completed. When an
    action fails, everything that transitively requires it is skipped while
    independent branches carry on. Each completed action is written to the
    state store immediately.
    """

    def __init__(self, plan: Plan, store: StateStore, ctx: Context[Provider]) -> None:
        if ctx.dry_run:
            raise ValueError("Cannot execute a plan with a dry-run context")
        self.plan = plan
        self.store = store
        self.ctx = ctx
        self.provider = ctx.provider
        self._values: dict[str, Any] = dict(plan.lookups)
        self._values.update(
            {address: entry.values() for address, entry in store.snapshot().items() if entry.exists}
        )
        self._values_lock = threading.Lock()

    def run(self) -> ApplyResult:
        settings = self.ctx.settings
        deadline = time.monotonic() + settings.timeout if settings.timeout else None
        pending: dict[str, Action] = {a.key: a for a in self.plan.actions}
        results: dict[str, ActionResult] = {}
        running: dict[Future[ActionResult], Action] = {}
        cancelled = False

        for address in self.plan.stale:
            logger.info("Forgetting %s; it was never created and is no longer declared", address)
            self.store.remove(address)

        logger.debug("Executing %d action(s) with parallelism %d", len(pending), settings.parallelism)
        with ThreadPoolExecutor(max_workers=settings.parallelism, thread_name_prefix="terrik") as pool:
            while pending or running:
                if not cancelled and (
                    self.ctx.cancelled or (deadline is not None and time.monotonic() >= deadline)
                ):
                    cancelled = True
                    logger.warning(
                        "Run cancelled; waiting for %d in-flight action(s), abandoning %d",
                        len(running),
                        len(pending),
                    )
                    for key, action in pending.items():
                        results[key] = ActionResult(action, ActionStatus.CANCELLED)
                    pending.clear()

                for key, action in list(pending.items()):
                    blocked = self._blocked_by(key, results)
                    if blocked:
                        logger.warning("Skipping %s; depends on unfinished %s", action.describe(), blocked)
                        results[key] = ActionResult(
                            action, ActionStatus.SKIPPED, error=f"dependency {blocked} did not complete"
                        )
                        del pending[key]
                    elif len(running) < settings.parallelism and self._ready(key, results):
                        del pending[key]
                        running[pool.submit(self._execute, action)] = action

                if not running:
                    if pending:
                        # only reachable if requirements reference unknown keys
                        for key, action in pending.items():
                            results[key] = ActionResult(action, ActionStatus.SKIPPED, error="unreachable")
                        pending.clear()
                    continue

                done, _ = wait(running, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    action = running.pop(future)
                    results[action.key] = future.result()

        ordered = [results[a.key] for a in self.plan.actions]
        with self._values_lock:
            values = dict(self._values)
        result = ApplyResult(results=ordered, values=values, cancelled=cancelled)
        logger.info(
            "Apply finished: %d completed, %d failed, %d skipped%s",
            len(result.completed),
            len(result.failed),
            len(result.skipped),
            " (cancelled)" if cancelled else "",
        )
        return result

    def _blocked_by(self, key: str, results: dict[str, ActionResult]) -> str | None:
        for dep in self.plan.requires.get(key, ()):
            result = results.get(dep)
            if result is not None and result.status is not ActionStatus.COMPLETED:
                return result.address
        return None

    def _ready(self, key: str, results: dict[str, ActionResult]) -> bool:
        return all(
            dep in results and results[dep].status is ActionStatus.COMPLETED
            for dep in self.plan.requires.get(key, ())
        )

    # -- Worker --

    def _execute(self, action: Action) -> ActionResult:
        if action.kind is ActionKind.NOOP:
            return ActionResult(action, ActionStatus.COMPLETED, provider_id=_prior_id(action))

        progress: dict[str, str] = {}
        try:
            if action.phase is Phase.DESTROY:
                self._destroy(action)
                return ActionResult(action, ActionStatus.COMPLETED, provider_id=_prior_id(action))
            entry = self._apply(action, progress)
            return ActionResult(action, ActionStatus.COMPLETED, provider_id=entry.provider_id)
        except CancellationError as exc:
            logger.warning("%s cancelled: %s", action.describe(), exc)
            self._record_failure(action, Status.CANCELLED, progress.get("provider_id"))
            return ActionResult(action, ActionStatus.CANCELLED, error=str(exc))
        except ProviderError as exc:
            logger.error("%s failed: %s", action.describe(), exc)
            self._record_failure(action, Status.FAILED, progress.get("provider_id"))
            return ActionResult(action, ActionStatus.FAILED, error=str(exc))
        except Exception as exc:
            logger.exception("%s failed unexpectedly", action.describe())
            self._record_failure(action, Status.FAILED, progress.get("provider_id"))
            return ActionResult(action, ActionStatus.FAILED, error=f"{type(exc).__name__}: {exc}")

    def _destroy(self, action: Action) -> None:
        entry = action.prior
        assert entry is not None
        logger.info("Destroying %s (%s)", action.address, entry.provider_id)
        if self.provider.destroy(entry, self.ctx) is False:
            raise ProviderError(f"Provider refused to destroy {entry.provider_id}", action.address)
        self.store.upsert(
            entry.model_copy(update={"status": Status.DESTROYED, "updated_at": datetime.now(UTC)})
        )
        if action.kind is ActionKind.DESTROY:
            with self._values_lock:
                self._values.pop(action.address, None)

    def _apply(self, action: Action, progress: dict[str, str]) -> StateEntry:
        resource = action.resource
        assert resource is not None
        with self._values_lock:
            values = dict(self._values)
        attrs = Resolver(values=values).resolve_attrs(resource.attrs)
        if contains_unknown(attrs):
            raise ProviderError(f"{action.address} has unresolved attributes", action.address)
        resolved = resource.model_copy(update={"attrs": attrs})

        provider_id: str
        if action.creates:
            logger.info("Creating %s", action.address)
            provider_id = self.provider.create(resolved, self.ctx)
            progress["provider_id"] = provider_id
            computed = self.provider.describe(resolved, provider_id, self.ctx)
        else:
            prior = action.prior
            assert prior is not None and prior.provider_id is not None
            provider_id = prior.provider_id
            changed = diff_attributes(attrs, prior.attributes)
            logger.info("Updating %s (%s)", action.address, ", ".join(sorted(changed)))
            if self.provider.update(resolved, provider_id, changed, self.ctx) is False:
                raise ProviderError(f"Provider refused to update {provider_id}", action.address)
            computed = {**prior.computed, **self.provider.describe(resolved, provider_id, self.ctx)}

        entry = StateEntry(
            address=action.address,
            type=resource.type,
            name=resource.name,
            status=Status.CREATED,
            provider_id=provider_id,
            attributes=attrs,
            computed=computed,
            dependencies=resource.dependencies(),
            index=resource.index,
        )
        self.store.upsert(entry)
        with self._values_lock:
            self._values[action.address] = entry.values()
        return entry

    def _record_failure(self, action: Action, status: Status, provider_id: str | None) -> None:
        if action.kind is ActionKind.UPDATE:
            # the prior entry still describes the live object; the next plan repeats the update
            logger.debug("Keeping %s as last applied", action.address)
            return
        resource = action.resource
        if action.creates and resource is not None:
            # provider_id is set only if the object was created before the failure
            self.store.upsert(
                StateEntry(
                    address=action.address,
                    type=resource.type,
                    name=resource.name,
                    status=status,
                    provider_id=provider_id,
                    dependencies=resource.dependencies(),
                    index=resource.index,
                )
            )
            return

        prior = action.prior
        defaults = {"type": prior.type, "name": prior.name} if prior is not None else {}
        self.store.mark(action.address, status, **defaults)


def _prior_id(action: Action) -> str | None:
    return action.prior.provider_id if action.prior else None
