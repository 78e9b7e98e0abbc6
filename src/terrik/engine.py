"""Engine — load, plan, apply and destroy with a managed state store lifecycle."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .config import Configuration
from .context import Context, Settings
from .executor import ApplyResult, Executor
from .graph import Graph, build_graph
from .model import Model
from .outputs import UNAVAILABLE, OutputValues, extract_outputs
from .plan import Plan, Planner
from .provider import Provider
from .state import StateStore, StoredOutput

logger = logging.getLogger(__name__)


@dataclass
class ApplyReport:
    """Everything a caller needs after apply: the plan, per-action results and outputs."""

    plan: Plan
    result: ApplyResult
    outputs: OutputValues

    @property
    def ok(self) -> bool:
        return self.result.ok


class Engine:
    """Drive a Configuration through plan and apply against a provider."""

    def __init__(
        self,
        config: Configuration,
        provider: Provider,
        *,
        settings: Settings | None = None,
        store: StateStore | None = None,
        overrides: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config = config
        self.settings = settings or Settings()
        self.ctx: Context[Provider] = Context(provider, settings=self.settings)
        self.store = store if store is not None else StateStore(self.settings.state_path)
        self._overrides = dict(overrides or {})
        self._environ = environ
        self._model: Model | None = None
        self._graph: Graph | None = None

    @property
    def provider(self) -> Provider:
        return self.ctx.provider

    def model(self) -> Model:
        """The desired Model; configuration errors surface here."""
        if self._model is None:
            self._model = self.config.resolve(self._overrides, environ=self._environ)
        return self._model

    def graph(self) -> Graph:
        if self._graph is None:
            self._graph = build_graph(self.model())
        return self._graph

    def plan(self, *, destroy: bool = False) -> Plan:
        """Compute a plan; persisted state is read but never written."""
        model, graph = self.model(), self.graph()
        with self.store:
            snapshot = self.store.snapshot()
        ctx = Context(
            self.provider,
            settings=self.settings,
            dry_run=True,
            cancel_event=self.ctx.cancel_event,
        )
        return Planner(model, graph, snapshot, provider=self.provider, ctx=ctx).plan(destroy=destroy)

    def apply(self, *, destroy: bool = False) -> ApplyReport:
        """Plan and execute, recording each completed action as it finishes."""
        model, graph = self.model(), self.graph()
        with self.store:
            snapshot = self.store.snapshot()
            self.provider.sync(snapshot, self.ctx)
            planner = Planner(model, graph, snapshot, provider=self.provider, ctx=self.ctx)
            plan = planner.plan(destroy=destroy)
            result = Executor(plan, self.store, self.ctx).run()

            statuses = {r.address: r.status for r in result.results}
            outputs = extract_outputs({} if destroy else model.outputs, result.values, statuses)
            self.store.record_outputs(_stored(outputs))
        return ApplyReport(plan, result, outputs)

    def destroy(self) -> ApplyReport:
        return self.apply(destroy=True)

    def outputs(self) -> OutputValues:
        """Outputs recorded by the last apply."""
        with self.store:
            stored = self.store.outputs()
        result = OutputValues()
        for name, out in stored.items():
            channel = result.sensitive if out.sensitive else result.values
            channel[name] = out.value
        return result

    def cancel(self) -> None:
        self.ctx.cancel()


def _stored(outputs: OutputValues) -> dict[str, StoredOutput]:
    stored: dict[str, StoredOutput] = {}
    for sensitive, channel in ((False, outputs.values), (True, outputs.sensitive)):
        for name, value in channel.items():
            if value is not UNAVAILABLE:
                stored[name] = StoredOutput(value=value, sensitive=sensitive)
    return stored
