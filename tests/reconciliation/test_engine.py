from __future__ import annotations

import logging

from bulkrecon.domain.error_codes import ErrorCode
from bulkrecon.domain.exceptions import ApplyFailed
from bulkrecon.domain.models import Entity, OutcomeStatus, ScalarTarget
from bulkrecon.domain.reconciliation.engine import SKIP_DRY_RUN, SKIP_IN_TARGET_STATE, ReconciliationEngine
from bulkrecon.domain.reconciliation.targets import scalar_target


def _logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.addHandler(logging.NullHandler())
    return logger


class FakeInventory:
    """Хранит политику VM и применяет изменения, как это делал бы vCenter."""

    def __init__(self, policies: dict[str, str], failing: set[str] | None = None):
        self.policies = dict(policies)
        self.failing = failing or set()
        self.calls: list[str] = []

    def entities(self) -> list[Entity]:
        return [
            Entity(entity_id=vm_id, name=f"vm-{vm_id}", attributes={"tools_upgrade_policy": policy})
            for vm_id, policy in self.policies.items()
        ]

    def apply(self, entity: Entity, target: ScalarTarget) -> None:
        self.calls.append(entity.entity_id)
        if entity.entity_id in self.failing:
            raise ApplyFailed(entity.entity_id, "ReconfigVM_Task failed: busy")
        self.policies[entity.entity_id] = target.value


def test_scenario_one_skipped_one_failed_one_applied():
    inventory = FakeInventory(
        {"vm-1": "upgradeAtPowerCycle", "vm-2": "manual", "vm-3": "manual"},
        failing={"vm-2"},
    )
    engine = ReconciliationEngine(logger=_logger("engine1"), run_id="r1")

    report = engine.run(inventory.entities(), scalar_target("tools_upgrade_policy", "upgradeAtPowerCycle"), inventory.apply)

    assert report.summary() == {"attempted": 3, "applied": 1, "skipped": 1, "failed": 1}
    assert report.exit_code() == 1
    statuses = {item.entity_id: item.status for item in report.items}
    assert statuses == {
        "vm-1": OutcomeStatus.SKIPPED,
        "vm-2": OutcomeStatus.FAILED,
        "vm-3": OutcomeStatus.APPLIED,
    }
    failed = next(item for item in report.items if item.status == OutcomeStatus.FAILED)
    assert failed.error_code == ErrorCode.APPLY_FAILED.value
    assert "busy" in failed.error_message
    # apply не вызывается для сущности уже в целевом состоянии
    assert inventory.calls == ["vm-2", "vm-3"]


def test_empty_scope_reports_zero_counts():
    engine = ReconciliationEngine(logger=_logger("engine2"), run_id="r2")

    report = engine.run([], scalar_target("tools_upgrade_policy", "manual"), lambda e, t: None)

    assert report.summary() == {"attempted": 0, "applied": 0, "skipped": 0, "failed": 0}
    assert report.exit_code() == 0


def test_rerun_after_reconcile_is_all_skipped():
    inventory = FakeInventory({"a": "manual", "b": "manual", "c": "upgradeAtPowerCycle"})
    compute = scalar_target("tools_upgrade_policy", "upgradeAtPowerCycle")
    engine = ReconciliationEngine(logger=_logger("engine3"), run_id="r3")

    first = engine.run(inventory.entities(), compute, inventory.apply)
    second = engine.run(inventory.entities(), compute, inventory.apply)

    assert first.summary()["applied"] == 2
    assert second.summary() == {"attempted": 3, "applied": 0, "skipped": 3, "failed": 0}
    assert all(item.reason == SKIP_IN_TARGET_STATE for item in second.items)


def test_failure_does_not_change_other_outcomes():
    compute = scalar_target("tools_upgrade_policy", "manual")
    engine = ReconciliationEngine(logger=_logger("engine4"), run_id="r4")

    baseline = engine.run(FakeInventory({"a": "x", "b": "x", "c": "x"}).entities(), compute, lambda e, t: None)

    def flaky(entity, target):
        if entity.entity_id == "b":
            raise RuntimeError("connection reset")

    isolated = engine.run(FakeInventory({"a": "x", "b": "x", "c": "x"}).entities(), compute, flaky)

    base = {i.entity_id: i.status for i in baseline.items}
    other = {i.entity_id: i.status for i in isolated.items}
    assert other["b"] == OutcomeStatus.FAILED
    assert other["a"] == base["a"]
    assert other["c"] == base["c"]
    failed = next(i for i in isolated.items if i.entity_id == "b")
    assert failed.error_code == ErrorCode.UNEXPECTED_ERROR.value


def test_compute_target_failure_is_recorded():
    def compute(entity):
        if entity.entity_id == "bad":
            raise KeyError("disabled_plans")
        return ScalarTarget(field="tools_upgrade_policy", value="manual")

    entities = [
        Entity(entity_id="bad", name="bad", attributes={}),
        Entity(entity_id="good", name="good", attributes={"tools_upgrade_policy": "upgradeAtPowerCycle"}),
    ]
    engine = ReconciliationEngine(logger=_logger("engine5"), run_id="r5")

    report = engine.run(entities, compute, lambda e, t: None)

    assert report.summary() == {"attempted": 2, "applied": 1, "skipped": 0, "failed": 1}
    assert report.items[0].error_code == ErrorCode.TARGET_FAILED.value


def test_dry_run_never_calls_apply():
    inventory = FakeInventory({"a": "manual", "b": "upgradeAtPowerCycle"})
    engine = ReconciliationEngine(logger=_logger("engine6"), run_id="r6", dry_run=True)

    report = engine.run(inventory.entities(), scalar_target("tools_upgrade_policy", "upgradeAtPowerCycle"), inventory.apply)

    assert inventory.calls == []
    assert report.summary() == {"attempted": 2, "applied": 0, "skipped": 2, "failed": 0}
    reasons = {i.entity_id: i.reason for i in report.items}
    assert reasons == {"a": SKIP_DRY_RUN, "b": SKIP_IN_TARGET_STATE}
