"""Tests for terrik.plan."""

from __future__ import annotations

import random

import pytest

from terrik.context import Context
from terrik.errors import StateCorruptionError
from terrik.executor import Executor
from terrik.graph import build_graph
from terrik.model import Declaration, Mode, Model, build_resources
from terrik.plan import ActionKind, Phase, Plan, Planner, diff_attributes, state_graph
from terrik.provider import MemoryProvider
from terrik.refs import UNKNOWN
from terrik.state import StateEntry, StateStore, Status


def _model(*decls: Declaration) -> Model:
    return Model(build_resources(decls, {}))


def _plan(model: Model, state=(), *, destroy=False, provider=None) -> Plan:
    entries = {e.address: e for e in state}
    return Planner(model, build_graph(model), entries, provider=provider).plan(destroy=destroy)


def _entry(address, provider_id, attributes=None, dependencies=(), index=0, status=Status.CREATED):
    type_name, name = address.split(".")
    return StateEntry(
        address=address,
        type=type_name,
        name=name,
        status=status,
        provider_id=provider_id,
        attributes=attributes or {},
        dependencies=list(dependencies),
        index=index,
    )


def _network(vpc_cidr="10.0.0.0/16", subnet_cidr="10.0.1.0/24", tags=None) -> Model:
    return _model(
        Declaration("aws_vpc", "main", {"cidr_block": vpc_cidr, "tags": tags or {"Name": "main"}}),
        Declaration("aws_subnet", "public", {"vpc_id": "${aws_vpc.main.id}", "cidr_block": subnet_cidr}),
        Declaration("aws_instance", "web", {"ami": "ami-1", "subnet_id": "${aws_subnet.public.id}"}),
    )


def _network_state() -> list[StateEntry]:
    return [
        _entry("aws_vpc.main", "vpc-1", {"cidr_block": "10.0.0.0/16", "tags": {"Name": "main"}}, index=0),
        _entry(
            "aws_subnet.public",
            "subnet-1",
            {"vpc_id": "vpc-1", "cidr_block": "10.0.1.0/24"},
            ["aws_vpc.main"],
            index=1,
        ),
        _entry(
            "aws_instance.web",
            "i-1",
            {"ami": "ami-1", "subnet_id": "subnet-1"},
            ["aws_subnet.public"],
            index=2,
        ),
    ]


class TestDiff:
    def test_equal(self):
        assert diff_attributes({"a": 1, "b": [1]}, {"a": 1, "b": [1]}) == set()

    def test_changed_added_removed(self):
        assert diff_attributes({"a": 2, "c": 1}, {"a": 1, "b": 1}) == {"a", "b", "c"}

    def test_unknown_is_a_change(self):
        assert diff_attributes({"vpc_id": UNKNOWN}, {"vpc_id": "vpc-1"}) == {"vpc_id"}


class TestCreate:
    def test_empty_state_creates_everything_in_order(self):
        plan = _plan(_network())
        assert [a.address for a in plan] == ["aws_vpc.main", "aws_subnet.public", "aws_instance.web"]
        assert all(a.kind is ActionKind.CREATE for a in plan)
        assert plan.summary()["to_add"] == 3
        assert plan.has_changes

    def test_requirements_follow_dependencies(self):
        plan = _plan(_network())
        assert plan.requires["apply:aws_subnet.public"] == frozenset({"apply:aws_vpc.main"})
        assert plan.requires["apply:aws_vpc.main"] == frozenset()

    def test_failed_entry_without_object_is_created(self):
        state = [_entry("aws_vpc.main", None, status=Status.FAILED)]
        plan = _plan(_model(Declaration("aws_vpc", "main", {"cidr_block": "10.0.0.0/16"})), state)
        assert plan.kind_of("aws_vpc.main") is ActionKind.CREATE

    def test_destroyed_entry_is_created(self):
        state = [_entry("aws_vpc.main", "vpc-1", {"cidr_block": "10.0.0.0/16"}, status=Status.DESTROYED)]
        plan = _plan(_model(Declaration("aws_vpc", "main", {"cidr_block": "10.0.0.0/16"})), state)
        assert plan.kind_of("aws_vpc.main") is ActionKind.CREATE


class TestNoop:
    def test_matching_state_is_noop(self):
        plan = _plan(_network(), _network_state())
        assert [a.kind for a in plan] == [ActionKind.NOOP] * 3
        assert not plan.has_changes
        assert plan.changes == []
        assert plan.summary()["unchanged"] == 3


class TestUpdate:
    def test_updatable_attribute(self):
        plan = _plan(_network(tags={"Name": "renamed"}), _network_state())
        (action,) = plan.changes
        assert action.address == "aws_vpc.main"
        assert action.kind is ActionKind.UPDATE
        assert action.changed == frozenset({"tags"})
        assert plan.kind_of("aws_subnet.public") is ActionKind.NOOP
        assert plan.summary()["to_change"] == 1


class TestReplace:
    def test_force_new_attribute_replaces(self):
        plan = _plan(_network(subnet_cidr="10.0.2.0/24"), _network_state())
        subnet = plan.for_address("aws_subnet.public")
        assert [a.phase for a in subnet] == [Phase.DESTROY, Phase.APPLY]
        assert all(a.kind is ActionKind.REPLACE for a in subnet)
        assert "cidr_block forces replacement" in subnet[0].reason

    def test_replacement_propagates_through_unknown_ids(self):
        plan = _plan(_network(subnet_cidr="10.0.2.0/24"), _network_state())
        # the new subnet id is unknown, and subnet_id forces a new instance
        assert plan.kind_of("aws_instance.web") is ActionKind.REPLACE
        assert plan.kind_of("aws_vpc.main") is ActionKind.NOOP

    def test_replace_order(self):
        plan = _plan(_network(vpc_cidr="10.1.0.0/16", subnet_cidr="10.1.1.0/24"), _network_state())
        destroy_web = plan.position("aws_instance.web", Phase.DESTROY)
        destroy_subnet = plan.position("aws_subnet.public", Phase.DESTROY)
        destroy_vpc = plan.position("aws_vpc.main", Phase.DESTROY)
        create_vpc = plan.position("aws_vpc.main")
        create_subnet = plan.position("aws_subnet.public")
        create_web = plan.position("aws_instance.web")
        assert destroy_web < destroy_subnet < destroy_vpc
        assert destroy_vpc < create_vpc < create_subnet < create_web

    def test_new_object_requires_old_one_gone(self):
        plan = _plan(_network(subnet_cidr="10.0.2.0/24"), _network_state())
        assert "destroy:aws_subnet.public" in plan.requires["apply:aws_subnet.public"]

    def test_summary_counts_replace(self):
        plan = _plan(_network(subnet_cidr="10.0.2.0/24"), _network_state())
        summary = plan.summary()
        assert summary["to_replace"] == 2
        assert summary["to_add"] == 2
        assert summary["to_destroy"] == 2

    def test_tainted_entry_is_replaced(self):
        state = _network_state()
        state[0] = state[0].model_copy(update={"status": Status.FAILED})
        plan = _plan(_network(), state)
        (destroy_step, create_step) = plan.for_address("aws_vpc.main")
        assert create_step.kind is ActionKind.REPLACE
        assert create_step.reason == "previous apply failed"
        assert destroy_step.phase is Phase.DESTROY

    def test_describe(self):
        plan = _plan(_network(subnet_cidr="10.0.2.0/24"), _network_state())
        steps = plan.for_address("aws_subnet.public")
        assert steps[0].describe() == "aws_subnet.public: replace (destroy old)"
        assert steps[1].describe() == "aws_subnet.public: replace (create new)"


class TestDestroy:
    def test_removed_resources_are_destroyed_dependents_first(self):
        model = _model(Declaration("aws_vpc", "main", {"cidr_block": "10.0.0.0/16", "tags": {"Name": "main"}}))
        plan = _plan(model, _network_state())
        assert plan.kind_of("aws_instance.web") is ActionKind.DESTROY
        assert plan.kind_of("aws_subnet.public") is ActionKind.DESTROY
        assert plan.kind_of("aws_vpc.main") is ActionKind.NOOP
        assert plan.position("aws_instance.web", Phase.DESTROY) < plan.position(
            "aws_subnet.public", Phase.DESTROY
        )
        assert "destroy:aws_instance.web" in plan.requires["destroy:aws_subnet.public"]

    def test_destroy_mode_is_reverse_of_create_order(self):
        create_order = [a.address for a in _plan(_network())]
        plan = _plan(_network(), _network_state(), destroy=True)
        assert plan.destroy
        assert all(a.kind is ActionKind.DESTROY for a in plan)
        assert [a.address for a in plan] == list(reversed(create_order))

    def test_destroy_mode_skips_absent_entries(self):
        state = _network_state()
        state[2] = state[2].model_copy(update={"status": Status.DESTROYED})
        plan = _plan(_network(), state, destroy=True)
        assert [a.address for a in plan] == ["aws_subnet.public", "aws_vpc.main"]

    def test_removed_resource_outlives_update_of_former_dependent(self):
        state = [
            _entry("aws_internet_gateway.gw", "igw-1", {}, index=0),
            _entry(
                "aws_route_table.rt",
                "rtb-1",
                {"vpc_id": "vpc-1", "gateway_id": "igw-1"},
                ["aws_internet_gateway.gw"],
                index=1,
            ),
        ]
        model = _model(Declaration("aws_route_table", "rt", {"vpc_id": "vpc-1"}))
        plan = _plan(model, state)
        assert plan.kind_of("aws_route_table.rt") is ActionKind.UPDATE
        assert "apply:aws_route_table.rt" in plan.requires["destroy:aws_internet_gateway.gw"]
        assert plan.position("aws_route_table.rt") < plan.position("aws_internet_gateway.gw", Phase.DESTROY)

    def test_undeclared_entries_without_objects_are_stale(self):
        state = [
            _entry("aws_vpc.gone", None, status=Status.FAILED),
            _entry("aws_vpc.main", None, status=Status.CANCELLED, index=1),
            _entry("aws_vpc.old", "vpc-9", status=Status.DESTROYED, index=2),
            _entry("aws_vpc.broken", "vpc-8", status=Status.FAILED, index=3),
        ]
        plan = _plan(_model(Declaration("aws_vpc", "main", {"cidr_block": "10.0.0.0/16"})), state)
        assert plan.stale == ["aws_vpc.gone"]
        assert plan.kind_of("aws_vpc.broken") is ActionKind.DESTROY
        assert plan.kind_of("aws_vpc.main") is ActionKind.CREATE

    def test_destroy_mode_marks_all_objectless_entries_stale(self):
        state = [_entry("aws_vpc.main", None, status=Status.FAILED)]
        model = _model(Declaration("aws_vpc", "main", {"cidr_block": "10.0.0.0/16"}))
        plan = _plan(model, state, destroy=True)
        assert plan.stale == ["aws_vpc.main"]
        assert len(plan) == 0

    def test_empty_everything(self):
        plan = _plan(_model())
        assert len(plan) == 0
        assert not plan.has_changes


class TestDataSources:
    def _model(self) -> Model:
        return _model(
            Declaration(
                "aws_ami",
                "ubuntu",
                {
                    "most_recent": True,
                    "owners": ["099720109477"],
                    "filter": [
                        {"name": "name", "values": ["ubuntu/images/hvm-ssd/ubuntu-jammy-22.04-amd64-server-*"]},
                        {"name": "virtualization-type", "values": ["hvm"]},
                    ],
                },
                Mode.DATA,
            ),
            Declaration("aws_instance", "web", {"ami": "${data.aws_ami.ubuntu.id}"}),
        )

    def test_lookup_values_are_known_at_plan_time(self):
        plan = _plan(self._model(), provider=MemoryProvider())
        assert plan.lookups["data.aws_ami.ubuntu"]["id"] == "ami-0a1b2c3d4e5f00002"
        assert [a.address for a in plan] == ["aws_instance.web"]

    def test_changed_lookup_replaces_dependent(self):
        state = [_entry("aws_instance.web", "i-1", {"ami": "ami-0a1b2c3d4e5f00001"}, ["data.aws_ami.ubuntu"])]
        plan = _plan(self._model(), state, provider=MemoryProvider())
        (_, create_step) = plan.for_address("aws_instance.web")
        assert create_step.kind is ActionKind.REPLACE
        assert "ami" in create_step.reason

    def test_without_provider_lookups_are_unknown(self):
        plan = _plan(self._model())
        assert plan.lookups["data.aws_ami.ubuntu"] is UNKNOWN
        assert plan.kind_of("aws_instance.web") is ActionKind.CREATE

    def test_destroy_mode_reads_nothing(self):
        provider = MemoryProvider()
        _plan(self._model(), destroy=True, provider=provider)
        assert provider.calls == []


class TestPlan:
    def test_position_unknown_raises(self):
        with pytest.raises(KeyError):
            _plan(_network()).position("aws_vpc.main", Phase.DESTROY)

    def test_kind_of_missing(self):
        assert _plan(_network()).kind_of("aws_vpc.other") is None

    def test_state_graph_cycle_is_corruption(self):
        entries = {
            "aws_vpc.a": _entry("aws_vpc.a", "vpc-a", dependencies=["aws_vpc.b"]),
            "aws_vpc.b": _entry("aws_vpc.b", "vpc-b", dependencies=["aws_vpc.a"], index=1),
        }
        with pytest.raises(StateCorruptionError, match="cycle"):
            state_graph(entries)


class TestScenario:
    def _model(self) -> Model:
        return _model(
            Declaration("aws_vpc", "v", {"cidr_block": "10.0.0.0/16"}),
            Declaration("aws_subnet", "s", {"vpc_id": "${aws_vpc.v.id}", "cidr_block": "10.0.1.0/24"}),
            Declaration("aws_security_group", "g", {"name": "web", "vpc_id": "${aws_vpc.v.id}"}),
            Declaration(
                "aws_instance",
                "i",
                {
                    "ami": "ami-1",
                    "subnet_id": "${aws_subnet.s.id}",
                    "vpc_security_group_ids": ["${aws_security_group.g.id}"],
                },
            ),
        )

    def test_create_order(self):
        plan = _plan(self._model())
        pos = {a.address: i for i, a in enumerate(plan)}
        assert pos["aws_vpc.v"] < pos["aws_subnet.s"] < pos["aws_instance.i"]
        assert pos["aws_vpc.v"] < pos["aws_security_group.g"] < pos["aws_instance.i"]

    def test_destroy_order(self):
        state = [
            _entry("aws_vpc.v", "vpc-1", index=0),
            _entry("aws_subnet.s", "subnet-1", dependencies=["aws_vpc.v"], index=1),
            _entry("aws_security_group.g", "sg-1", dependencies=["aws_vpc.v"], index=2),
            _entry("aws_instance.i", "i-1", dependencies=["aws_subnet.s", "aws_security_group.g"], index=3),
        ]
        plan = _plan(self._model(), state, destroy=True)
        pos = {a.address: i for i, a in enumerate(plan)}
        assert pos["aws_instance.i"] < pos["aws_subnet.s"] < pos["aws_vpc.v"]
        assert pos["aws_instance.i"] < pos["aws_security_group.g"] < pos["aws_vpc.v"]


def _random_chain(seed: int) -> tuple[Model, dict[str, list[str]]]:
    """Security groups wired into a random DAG, declared in shuffled order."""
    rng = random.Random(seed)
    names = [f"sg{i}" for i in range(rng.randint(1, 12))]
    deps = {name: rng.sample(names[:i], rng.randint(0, min(i, 3))) for i, name in enumerate(names)}
    declared = names[:]
    rng.shuffle(declared)
    model = _model(
        *(
            Declaration(
                "aws_security_group",
                name,
                {
                    "name": name,
                    "tags": {dep: f"${{aws_security_group.{dep}.id}}" for dep in deps[name]},
                },
            )
            for name in declared
        )
    )
    return model, deps


class TestRandomGraphs:
    @pytest.mark.parametrize("seed", range(200))
    def test_ordering_and_convergence(self, seed):
        model, deps = _random_chain(seed)
        create = _plan(model)
        pos = {a.address: i for i, a in enumerate(create)}
        for name, needs in deps.items():
            for dep in needs:
                assert pos[f"aws_security_group.{dep}"] < pos[f"aws_security_group.{name}"]

        provider = MemoryProvider()
        with StateStore() as store:
            assert Executor(create, store, Context(provider)).run().ok
            recorded = list(store.snapshot().values())

        assert not _plan(model, recorded, provider=provider).has_changes
        destroy = _plan(model, recorded, destroy=True)
        assert [a.address for a in destroy] == [a.address for a in reversed(create.actions)]
