import threading

import pytest
from conftest import BOARD

from serverforge.errors import (
    CapacityExhaustedError,
    CompatibilityBlockedError,
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationFailedError,
)
from serverforge.schemas import Component, ComponentStatus, ConfigurationStatus


def _status(assembler, component_type, component_id):
    return assembler.get_component(component_type, component_id)


def _minimal_server(assembler, config_id):
    assembler.add_component(config_id, "motherboard", "MB-X12-4189")
    assembler.add_component(config_id, "cpu", "CPU-XEON-6338-A")
    assembler.add_component(config_id, "ram", "RAM-DDR5-32G-1")


def test_example_build_end_to_end(assembler, board_config):
    cid = board_config

    cpu = assembler.add_component(cid, "cpu", "CPU-XEON-6338-A")
    assert cpu.compatibility.compatible
    assert cpu.compatibility.score == 95

    with pytest.raises(CompatibilityBlockedError) as blocked:
        assembler.add_component(cid, "cpu", "CPU-RYZEN-7950X")
    assert "socket_mismatch" in blocked.value.failure_kinds

    for i in range(1, 5):
        added = assembler.add_component(cid, "ram", f"RAM-DDR5-32G-{i}")
        assert added.assigned_slot == f"dimm_slot_{i}"
    with pytest.raises(CapacityExhaustedError) as exhausted:
        assembler.add_component(cid, "ram", "RAM-DDR5-32G-5")
    assert exhausted.value.slot_class == "dimm"

    card = assembler.add_component(cid, "pciecard", "ACCEL-X16-1")
    assert card.assigned_slot == "pcie_x16_slot_1"

    riser = assembler.add_component(cid, "pciecard", "RISER-2X8-1")
    assert riser.assigned_slot == "pcie_x16_slot_2"
    state = assembler.slot_state(cid)
    assert state.classes["pcie_x16"].available == 0
    riser_class = state.classes["riser_x8@pcie_x16_slot_2"]
    assert riser_class.available == 2
    assert riser_class.provided_by == "pciecard:RISER-2X8-1"

    nic = assembler.add_component(cid, "nic", "NIC-25G-X8-1")
    assert nic.assigned_slot == "pcie_x16_slot_2/riser_x8_slot_1"

    slots = [a.slot_id for a in assembler.get_configuration(cid).components if a.slot_id]
    assert len(slots) == len(set(slots))

    # 被拒绝的组件保持可用
    assert _status(assembler, "cpu", "CPU-RYZEN-7950X").status == ComponentStatus.AVAILABLE
    assert _status(assembler, "ram", "RAM-DDR5-32G-5").status == ComponentStatus.AVAILABLE
    assert _status(assembler, "nic", "NIC-25G-X8-1").owner_config_id == cid


def test_insertion_order_does_not_change_verdict(assembler):
    def second_add(first, second):
        config = assembler.create_configuration("order", mode="test")
        assembler.add_component(config.config_id, *first)
        try:
            result = assembler.add_component(config.config_id, *second)
            return result.compatibility.compatible, sorted(result.compatibility.failure_kinds)
        except CompatibilityBlockedError as err:
            return False, sorted(err.failure_kinds)

    board = ("motherboard", "MB-X12-4189")
    for cpu in (("cpu", "CPU-XEON-6338-A"), ("cpu", "CPU-RYZEN-7950X")):
        assert second_add(cpu, board) == second_add(board, cpu)


def test_riser_capacity_conservation(assembler, board_config):
    before = assembler.slot_state(board_config)
    assembler.add_component(board_config, "pciecard", "RISER-2X8-1")
    after = assembler.slot_state(board_config)
    assert after.available() - before.available() == 2 - 1
    assert after.total() - before.total() == 2


def test_test_mode_claims_leave_inventory_untouched(assembler):
    sandbox = assembler.create_configuration("sandbox", mode="test").config_id
    assembler.add_component(sandbox, "motherboard", "MB-X12-4189")
    result = assembler.add_component(sandbox, "ram", "RAM-DDR5-32G-1")
    assert result.assigned_slot == "dimm_slot_1"
    assert _status(assembler, "ram", "RAM-DDR5-32G-1").status == ComponentStatus.AVAILABLE

    assembler.remove_component(sandbox, "ram", "RAM-DDR5-32G-1")
    row = _status(assembler, "ram", "RAM-DDR5-32G-1")
    assert row.status == ComponentStatus.AVAILABLE
    assert row.owner_config_id is None


def test_real_mode_remove_releases_claim(assembler, board_config):
    assembler.add_component(board_config, "ram", "RAM-DDR5-32G-1")
    assert _status(assembler, "ram", "RAM-DDR5-32G-1").status == ComponentStatus.IN_USE
    removed = assembler.remove_component(board_config, "ram", "RAM-DDR5-32G-1")
    assert removed.released_slot == "dimm_slot_1"
    row = _status(assembler, "ram", "RAM-DDR5-32G-1")
    assert row.status == ComponentStatus.AVAILABLE
    assert row.owner_config_id is None


def test_failed_slot_assignment_rolls_back_claim(assembler, board_config):
    with pytest.raises(NotFoundError):
        assembler.add_component(board_config, "nic", "NIC-25G-X8-1", slot_hint="pcie_x16_slot_9")
    assert _status(assembler, "nic", "NIC-25G-X8-1").status == ComponentStatus.AVAILABLE
    assert assembler.get_configuration(board_config).by_type("nic") == []

    assembler.add_component(board_config, "nic", "NIC-25G-X8-1", slot_hint="pcie_x16_slot_2")
    with pytest.raises(CapacityExhaustedError):
        assembler.add_component(board_config, "nic", "NIC-25G-X8-2", slot_hint="pcie_x16_slot_2")
    assert _status(assembler, "nic", "NIC-25G-X8-2").status == ComponentStatus.AVAILABLE


def test_readding_owned_component_is_idempotent(assembler, board_config):
    first = assembler.add_component(board_config, "ram", "RAM-DDR5-32G-1")
    again = assembler.add_component(board_config, "ram", "RAM-DDR5-32G-1")
    assert again.assigned_slot == first.assigned_slot
    assert len(assembler.get_configuration(board_config).by_type("ram")) == 1


def test_claim_conflict_and_override(assembler, board_config):
    assembler.add_component(board_config, "ram", "RAM-DDR5-32G-1")
    other = assembler.create_configuration("rack-b").config_id
    assembler.add_component(other, "motherboard", "MB-X12-4189", override=True)

    with pytest.raises(ConflictError) as conflict:
        assembler.add_component(other, "ram", "RAM-DDR5-32G-1")
    assert conflict.value.current_owner == board_config

    taken = assembler.add_component(other, "ram", "RAM-DDR5-32G-1", override=True)
    assert taken.override_used
    assert "component_preempted" in taken.compatibility.warning_kinds
    assert _status(assembler, "ram", "RAM-DDR5-32G-1").owner_config_id == other

    audit = [h for h in assembler.history(other) if h["action"] == "add_component" and h["component_type"] == "ram"]
    assert audit[-1]["metadata"]["override_used"] is True
    assert audit[-1]["metadata"]["previous_owner"] == board_config

    report = assembler.validate(board_config)
    assert not report.valid
    assert "claim_lost" in [i.kind for i in report.critical_errors]

    # 原配置移除时不能释放新归属者的组件
    assembler.remove_component(board_config, "ram", "RAM-DDR5-32G-1")
    assert _status(assembler, "ram", "RAM-DDR5-32G-1").owner_config_id == other


def test_concurrent_adds_of_same_component(assembler):
    configs = [assembler.create_configuration(f"race-{i}").config_id for i in range(2)]
    barrier = threading.Barrier(2)
    results = {}

    def add(config_id):
        barrier.wait()
        try:
            assembler.add_component(config_id, "cpu", "CPU-XEON-6338-A")
            results[config_id] = "ok"
        except ConflictError:
            results[config_id] = "conflict"

    threads = [threading.Thread(target=add, args=(cid,)) for cid in configs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results.values()) == ["conflict", "ok"]
    winner = next(cid for cid, r in results.items() if r == "ok")
    assert _status(assembler, "cpu", "CPU-XEON-6338-A").owner_config_id == winner


def test_components_added_before_motherboard_are_placed_later(assembler):
    cid = assembler.create_configuration("late-board").config_id
    nic = assembler.add_component(cid, "nic", "NIC-25G-X8-1")
    assert nic.assigned_slot is None
    assert "slot_pending" in nic.compatibility.warning_kinds
    assembler.add_component(cid, "pciecard", "ACCEL-X16-1")
    assembler.add_component(cid, "pciecard", "RISER-2X8-1")
    assert "slot_pending" in [i.kind for i in assembler.validate(cid).critical_errors]

    board = assembler.add_component(cid, "motherboard", "MB-X12-4189")
    assert board.placed == {
        "pciecard:RISER-2X8-1": "pcie_x16_slot_1",
        "pciecard:ACCEL-X16-1": "pcie_x16_slot_2",
        "nic:NIC-25G-X8-1": "pcie_x16_slot_1/riser_x8_slot_1",
    }
    assert assembler.slot_state(cid).pending == []


def test_motherboard_that_cannot_host_pending_cards_is_rejected(assembler):
    cid = assembler.create_configuration("too-many").config_id
    assembler.add_component(cid, "pciecard", "ACCEL-X16-1")
    assembler.add_component(cid, "nic", "NIC-25G-X8-1")
    assembler.add_component(cid, "nic", "NIC-25G-X8-2")
    with pytest.raises(CapacityExhaustedError):
        assembler.add_component(cid, "motherboard", "MB-X12-4189")
    assert _status(assembler, "motherboard", "MB-X12-4189").status == ComponentStatus.AVAILABLE
    assert sorted(assembler.slot_state(cid).pending) == ["nic:NIC-25G-X8-1", "nic:NIC-25G-X8-2", "pciecard:ACCEL-X16-1"]


def test_removing_motherboard_unplaces_cards(assembler, board_config):
    assembler.add_component(board_config, "nic", "NIC-25G-X8-1")
    removed = assembler.remove_component(board_config, "motherboard", "MB-X12-4189")
    assert removed.replaced == {"nic:NIC-25G-X8-1": None}
    assert assembler.slot_state(board_config).pending == ["nic:NIC-25G-X8-1"]


def test_removing_riser_replaces_children(assembler, board_config):
    assembler.add_component(board_config, "pciecard", "ACCEL-X16-1")
    assembler.add_component(board_config, "pciecard", "RISER-2X8-1")
    assembler.add_component(board_config, "nic", "NIC-25G-X8-1")
    assembler.add_component(board_config, "nic", "NIC-25G-X8-2")

    removed = assembler.remove_component(board_config, "pciecard", "RISER-2X8-1")
    assert removed.released_slot == "pcie_x16_slot_2"
    assert removed.replaced == {"nic:NIC-25G-X8-1": "pcie_x16_slot_2", "nic:NIC-25G-X8-2": None}
    state = assembler.slot_state(board_config)
    assert state.pending == ["nic:NIC-25G-X8-2"]
    assert not any(name.startswith("riser") for name in state.classes)


def test_validate_and_finalize_real_configuration(assembler):
    cid = assembler.create_configuration("prod").config_id
    report = assembler.validate(cid)
    assert not report.valid
    missing = {i.details["component_type"] for i in report.critical_errors if i.kind == "missing_required_component"}
    assert missing == {"cpu", "motherboard", "ram"}

    _minimal_server(assembler, cid)
    report = assembler.validate(cid)
    assert report.valid
    assert report.score == 95
    assert report.status == ConfigurationStatus.VALIDATED
    assert report.estimated_power_w == int((205 + 120) * 1.35)

    done = assembler.finalize(cid)
    assert done.success and done.timestamp
    config = assembler.get_configuration(cid)
    assert config.status == ConfigurationStatus.FINALIZED
    assert config.finalized_at == done.timestamp

    with pytest.raises(PermissionDeniedError):
        assembler.add_component(cid, "nic", "NIC-25G-X8-1", privileged=True)
    with pytest.raises(PermissionDeniedError):
        assembler.delete_configuration(cid)


def test_test_mode_never_finalizes(assembler):
    cid = assembler.create_configuration("sandbox", mode="test").config_id
    _minimal_server(assembler, cid)
    assert assembler.validate(cid).valid
    with pytest.raises(ValidationFailedError):
        assembler.finalize(cid)
    with pytest.raises(ValidationFailedError):
        assembler.set_status(cid, ConfigurationStatus.FINALIZED, privileged=True)


def test_finalize_requires_valid_configuration(assembler, board_config):
    with pytest.raises(ValidationFailedError) as failed:
        assembler.finalize(board_config)
    assert {i.kind for i in failed.value.errors} == {"missing_required_component"}


def test_built_configuration_needs_privilege(assembler):
    cid = assembler.create_configuration("built").config_id
    _minimal_server(assembler, cid)
    with pytest.raises(ValidationFailedError):
        assembler.mark_built(cid)
    assembler.validate(cid)
    assert assembler.mark_built(cid).status == ConfigurationStatus.BUILT

    with pytest.raises(PermissionDeniedError):
        assembler.add_component(cid, "ram", "RAM-DDR5-32G-2")
    added = assembler.add_component(cid, "ram", "RAM-DDR5-32G-2", privileged=True)
    assert added.assigned_slot == "dimm_slot_2"


def test_privileged_status_override(assembler):
    cid = assembler.create_configuration("reopen").config_id
    _minimal_server(assembler, cid)
    assembler.finalize(cid)

    with pytest.raises(PermissionDeniedError):
        assembler.set_status(cid, ConfigurationStatus.DRAFT)
    reopened = assembler.set_status(cid, ConfigurationStatus.DRAFT, privileged=True, reason="rma")
    assert reopened.status == ConfigurationStatus.DRAFT
    assert reopened.finalized_at is None
    assembler.remove_component(cid, "ram", "RAM-DDR5-32G-1")
    assert any(h["action"] == "set_status" for h in assembler.history(cid))


def test_delete_releases_every_component(assembler):
    cid = assembler.create_configuration("temp").config_id
    _minimal_server(assembler, cid)
    assembler.delete_configuration(cid)
    for component_type, component_id in (("motherboard", "MB-X12-4189"), ("cpu", "CPU-XEON-6338-A")):
        row = _status(assembler, component_type, component_id)
        assert row.status == ComponentStatus.AVAILABLE
        assert row.owner_config_id is None
    with pytest.raises(NotFoundError):
        assembler.get_configuration(cid)


def test_clone_to_test_mode(assembler):
    cid = assembler.create_configuration("source").config_id
    _minimal_server(assembler, cid)
    clone = assembler.clone_configuration(cid)
    assert clone.mode == "test"
    assert {a.ref for a in clone.components} == {a.ref for a in assembler.get_configuration(cid).components}
    assert _status(assembler, "cpu", "CPU-XEON-6338-A").owner_config_id == cid

    with pytest.raises(ConflictError):
        assembler.clone_configuration(cid, name="real copy", mode="real")
    assert [c.name for c in assembler.list_configurations()].count("real copy") == 0


def test_compatible_components_filters_unknown_and_incompatible(assembler, board_config):
    assembler.provision_component(Component(component_type="ram", component_id="RAM-MYSTERY"))
    assembler.provision_component(
        Component(component_type="ram", component_id="RAM-NOTES-ONLY", notes="32GB DDR5 4800 RDIMM")
    )
    candidates = {c.component.component_id: c for c in assembler.compatible_components(board_config, "ram")}
    assert "RAM-MYSTERY" not in candidates
    assert "RAM-DDR4-32G-1" not in candidates
    assert "RAM-DDR5-32G-1" in candidates
    inferred = candidates["RAM-NOTES-ONLY"]
    assert inferred.source.value == "inferred_from_text"
    assert inferred.compatibility.score == 70


def test_unknown_configuration_and_component(assembler, board_config):
    with pytest.raises(NotFoundError):
        assembler.add_component("missing", "cpu", "CPU-XEON-6338-A")
    with pytest.raises(NotFoundError):
        assembler.add_component(board_config, "cpu", "CPU-NOT-IN-STOCK")
    with pytest.raises(NotFoundError):
        assembler.remove_component(board_config, "cpu", "CPU-XEON-6338-A")
    with pytest.raises(NotFoundError):
        assembler.add_component(board_config, "gpu", "X")
    with pytest.raises(ValidationFailedError):
        assembler.add_component(board_config, "ram", "RAM-DDR5-32G-1", quantity=2)


def test_failed_component_needs_repair_workflow(assembler, board_config):
    assembler.provision_component(
        Component(component_type="ram", component_id="RAM-BAD", status=ComponentStatus.FAILED)
    )
    with pytest.raises(PermissionDeniedError):
        assembler.add_component(board_config, "ram", "RAM-BAD", override=True)


def test_history_records_lifecycle(assembler, board_config):
    assembler.add_component(board_config, "cpu", "CPU-XEON-6338-A")
    assembler.remove_component(board_config, "cpu", "CPU-XEON-6338-A")
    actions = [h["action"] for h in assembler.history(board_config)]
    assert actions == ["create", "add_component", "add_component", "remove_component"]


def _board_without(assembler, component_id, **missing):
    board = BOARD.model_copy(update={"component_id": component_id, **missing})
    assembler.resolver.oracle.add(board)
    assembler.provision_component(Component(component_type="motherboard", component_id=component_id))
    return component_id


def test_board_without_dimm_count_accepts_listed_modules(assembler):
    board_id = _board_without(assembler, "MB-NO-DIMM", memory_slots=None)
    cid = assembler.create_configuration("no-dimm-count").config_id
    assembler.add_component(cid, "motherboard", board_id)
    assembler.add_component(cid, "cpu", "CPU-XEON-6338-A")

    listed = [c.component.component_id for c in assembler.compatible_components(cid, "ram")]
    assert "RAM-DDR5-32G-1" in listed
    added = assembler.add_component(cid, "ram", "RAM-DDR5-32G-1")
    assert added.assigned_slot is None
    assert {"slot_pending", "slot_capacity_undetermined"} <= set(added.compatibility.warning_kinds)
    assert assembler.slot_state(cid).pending == ["ram:RAM-DDR5-32G-1"]

    report = assembler.validate(cid)
    assert report.valid
    assert "slot_capacity_undetermined" in [w.kind for w in report.warnings]


def test_board_without_pcie_slots_accepts_cards(assembler):
    board_id = _board_without(assembler, "MB-NO-PCIE", pcie_slots=None)
    cid = assembler.create_configuration("no-pcie").config_id
    assembler.add_component(cid, "motherboard", board_id)
    added = assembler.add_component(cid, "nic", "NIC-25G-X8-1")
    assert added.assigned_slot is None
    assert "slot_pending" in added.compatibility.warning_kinds
    with pytest.raises(NotFoundError):
        assembler.add_component(cid, "nic", "NIC-25G-X8-2", slot_hint="pcie_x16_slot_1")


def test_board_without_pcie_slots_keeps_pending_cards(assembler):
    board_id = _board_without(assembler, "MB-NO-PCIE", pcie_slots=None)
    cid = assembler.create_configuration("late-no-pcie").config_id
    assembler.add_component(cid, "nic", "NIC-25G-X8-1")
    board = assembler.add_component(cid, "motherboard", board_id)
    assert board.placed == {}
    assert "slot_pending" in board.compatibility.warning_kinds
    assert assembler.slot_state(cid).pending == ["nic:NIC-25G-X8-1"]
    assert _status(assembler, "motherboard", board_id).status == ComponentStatus.IN_USE


def test_mark_built_validates_again(assembler):
    cid = assembler.create_configuration("stripped").config_id
    _minimal_server(assembler, cid)
    assert assembler.validate(cid).valid
    assembler.remove_component(cid, "cpu", "CPU-XEON-6338-A")
    assembler.remove_component(cid, "ram", "RAM-DDR5-32G-1")

    with pytest.raises(ValidationFailedError) as failed:
        assembler.mark_built(cid)
    missing = {i.details["component_type"] for i in failed.value.errors if i.kind == "missing_required_component"}
    assert missing == {"cpu", "ram"}
    assert assembler.get_configuration(cid).status == ConfigurationStatus.VALIDATED


def test_idle_configuration_locks_are_swept(assembler):
    with pytest.raises(NotFoundError):
        assembler.validate("never-created")
    assert "never-created" in assembler._config_locks

    cid = assembler.create_configuration("busy").config_id
    held = assembler._get_config_lock(cid)
    with held:
        for key in ("never-created", cid):
            assembler._lock_last_seen[key] -= assembler.lock_idle_seconds + 1
        assembler._cleanup_config_locks(force=True)
    assert "never-created" not in assembler._config_locks
    assert assembler._config_locks[cid] is held
