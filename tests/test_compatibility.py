from conftest import BOARD, ddr5_module, spec, xeon

from serverforge.builder import CompatibilityEvaluator, estimate_system_power, normalize_socket
from serverforge.schemas import AttributeSource, ComponentSpec


evaluator = CompatibilityEvaluator()


def test_socket_exact_match_scores_95():
    result = evaluator.evaluate(xeon("C1"), [BOARD])
    assert result.compatible
    assert result.score == 95
    assert result.failures == []


def test_socket_mismatch_blocks():
    result = evaluator.evaluate(spec("cpu", "AMD", socket="AM5"), [BOARD])
    assert not result.compatible
    assert "socket_mismatch" in result.failure_kinds
    assert result.score == 0


def test_socket_names_are_normalized():
    assert normalize_socket("lga 4189") == normalize_socket("LGA-4189") == "LGA4189"
    assert normalize_socket("Socket SP3") == "SP3"
    result = evaluator.evaluate(xeon("C1", socket="lga-4189"), [BOARD])
    assert result.compatible and result.score == 95


def test_unknown_socket_assumes_compatible_with_warning():
    cpu = xeon("C1", socket=None)
    result = evaluator.evaluate(cpu, [BOARD])
    assert result.compatible
    assert result.score == 75
    assert "socket_unknown" in result.warning_kinds


def test_verdict_is_order_independent():
    cpu = spec("cpu", "AMD", socket="AM5", memory_types=["DDR5"])
    forward = evaluator.evaluate(BOARD, [cpu])
    backward = evaluator.evaluate(cpu, [BOARD])
    assert forward.compatible == backward.compatible
    assert sorted(forward.failure_kinds) == sorted(backward.failure_kinds)
    assert forward.score == backward.score


def test_second_cpu_with_other_socket_fails_against_both():
    result = evaluator.evaluate(spec("cpu", "AMD", socket="AM5"), [BOARD, xeon("C1")])
    assert result.failure_kinds.count("socket_mismatch") == 2


def test_memory_type_mismatch_blocks():
    ddr4 = spec("ram", "R4", memory_type="DDR4", capacity_gb=32)
    result = evaluator.evaluate(ddr4, [BOARD, xeon("C1")])
    assert not result.compatible
    assert result.failure_kinds.count("memory_type_mismatch") == 2


def test_memory_frequency_is_clamped_to_lowest_platform_limit():
    fast = ddr5_module("R1", frequency_mhz=5600)
    cpu = xeon("C1", max_memory_frequency_mhz=4400)
    result = evaluator.evaluate(fast, [BOARD, cpu])
    assert result.compatible
    clamp = next(w for w in result.warnings if w.kind == "memory_frequency_clamped")
    assert clamp.details["effective_mhz"] == 4400
    assert clamp.severity == "warning"


def test_ecc_on_non_ecc_platform_is_only_a_warning():
    board = BOARD.model_copy(update={"ecc": False})
    result = evaluator.evaluate(ddr5_module("R1"), [board])
    assert result.compatible
    assert "ecc_unsupported" in result.warning_kinds


def test_ecc_required_by_cpu_blocks_non_ecc_modules():
    cpu = xeon("C1", ecc_required=True)
    result = evaluator.evaluate(ddr5_module("R1", ecc=False), [cpu])
    assert "ecc_required" in result.failure_kinds


def test_modules_cannot_mix_types_but_may_mix_speeds():
    mixed_type = evaluator.check_pair(ddr5_module("R1"), spec("ram", "R2", memory_type="DDR4"))
    assert "memory_mixing" in mixed_type.failure_kinds

    mixed_speed = evaluator.check_pair(ddr5_module("R1"), ddr5_module("R2", frequency_mhz=4400))
    assert mixed_speed.compatible
    assert mixed_speed.warnings[0].details["effective_mhz"] == 4400


def test_dimm_count_over_slots_is_a_capacity_failure():
    modules = [ddr5_module(f"R{i}") for i in range(4)]
    result = evaluator.evaluate(ddr5_module("R5"), [BOARD, *modules])
    assert not result.compatible
    failure = next(f for f in result.failures if f.kind == "memory_slots_exhausted")
    assert failure.category == "capacity"


def test_single_instance_types():
    other_board = BOARD.model_copy(update={"component_id": "MB-2"})
    result = evaluator.evaluate(other_board, [BOARD])
    assert "single_instance_exceeded" in result.failure_kinds

    hba_a = spec("hbacard", "H1", pcie_width="x8")
    hba_b = spec("hbacard", "H2", pcie_width="x8")
    assert "single_instance_exceeded" in evaluator.evaluate(hba_b, [hba_a]).failure_kinds


def test_pcie_card_wider_than_any_slot_is_capacity_failure():
    narrow_board = BOARD.model_copy(update={"pcie_slots": {"x8": 3}})
    card = spec("pciecard", "GPU", pcie_width="x16")
    result = evaluator.evaluate(card, [narrow_board])
    failure = next(f for f in result.failures if f.kind == "slot_width_unavailable")
    assert failure.category == "capacity"


def test_riser_slots_count_for_cards_but_not_for_risers():
    narrow_board = BOARD.model_copy(update={"pcie_slots": {"x8": 2}})
    wide_riser = spec("pciecard", "RISER", subtype="riser", pcie_width="x8", riser_slots={"x16": 1})
    card = spec("pciecard", "GPU", pcie_width="x16")
    assert evaluator.evaluate(card, [narrow_board, wide_riser]).compatible

    second_riser = spec("pciecard", "RISER-2", subtype="riser", pcie_width="x16", riser_slots={"x8": 2})
    result = evaluator.evaluate(second_riser, [narrow_board, wide_riser])
    assert "slot_width_unavailable" in result.failure_kinds


def test_unknown_pcie_width_reserves_x16():
    card = spec("nic", "N?", pcie_generation=4)
    result = evaluator.evaluate(card, [BOARD])
    assert result.compatible
    assert "pcie_width_assumed" in result.warning_kinds


def test_lane_budget():
    cpu = xeon("C1", pcie_lanes=24)
    cards = [spec("pciecard", f"G{i}", pcie_width="x16") for i in range(1)]
    result = evaluator.evaluate(spec("nic", "N1", pcie_width="x16"), [BOARD, cpu, *cards])
    failure = next(f for f in result.failures if f.kind == "pcie_lane_budget_exceeded")
    assert failure.details == {"demand": 32, "budget": 24}


def test_pcie_generation_mismatch_is_a_warning():
    card = spec("nic", "N5", pcie_width="x8", pcie_generation=5)
    result = evaluator.evaluate(card, [BOARD])
    assert result.compatible
    assert "pcie_generation_mismatch" in result.warning_kinds


def test_chassis_rules():
    chassis = spec("chassis", "CH", supported_form_factors=["ATX"], drive_bay_sizes=['3.5"'])
    board_result = evaluator.evaluate(BOARD, [chassis])
    assert board_result.compatible
    assert "form_factor_mismatch" in board_result.warning_kinds

    ssd = spec("storage", "S1", storage_interface="SATA", storage_form_factor="2.5 inch")
    assert "drive_bay_mismatch" in evaluator.evaluate(ssd, [chassis]).failure_kinds

    nvme = spec("storage", "S2", storage_interface="NVMe", storage_form_factor="M.2")
    assert evaluator.evaluate(nvme, [chassis]).compatible


def test_storage_needs_a_matching_port():
    board = BOARD.model_copy(update={"m2_slots": 0, "sata_ports": 4, "sas_ports": 0})
    nvme = spec("storage", "S2", storage_interface="NVMe")
    assert "storage_port_unavailable" in evaluator.evaluate(nvme, [board]).failure_kinds
    sata = spec("storage", "S3", storage_interface="SATA")
    assert evaluator.evaluate(sata, [board]).compatible


def test_total_memory_limit():
    board = BOARD.model_copy(update={"max_memory_gb": 64})
    modules = [ddr5_module("R1"), ddr5_module("R2")]
    result = evaluator.evaluate(ddr5_module("R3"), [board, *modules])
    assert "memory_capacity_exceeded" in result.failure_kinds


def test_missing_specification_is_undetermined_not_failure():
    unknown = ComponentSpec(component_type="cpu", component_id="C?", source=AttributeSource.UNKNOWN)
    result = evaluator.evaluate(unknown, [BOARD])
    assert result.compatible
    assert result.warning_kinds == ["requirements_undetermined"]
    assert result.score == 75

    failed_lookup = unknown.model_copy(update={"lookup_error": "catalog offline"})
    assert evaluator.evaluate(failed_lookup, [BOARD]).warning_kinds == ["oracle_unavailable"]


def test_inferred_attributes_cap_the_score():
    inferred = ComponentSpec(
        component_type="cpu",
        component_id="C1",
        source=AttributeSource.INFERRED_FROM_TEXT,
        socket="LGA4189",
        inferred_fields=["socket"],
    )
    result = evaluator.evaluate(inferred, [BOARD])
    assert result.compatible
    assert result.score == 70
    assert "inferred_attributes" in result.warning_kinds


def test_configuration_score_is_minimum_over_links():
    cpu_unknown_socket = xeon("C1", socket=None)
    specs = [BOARD, xeon("C0"), cpu_unknown_socket, ddr5_module("R1")]
    result = evaluator.evaluate_configuration(specs)
    assert result.compatible
    assert result.score == 75


def test_empty_configuration_scores_100():
    assert evaluator.evaluate_configuration([]).score == 100
    assert evaluator.evaluate(xeon("C1"), []).score == 100


def test_rule_table_lists_pair_and_aggregate_rules():
    rules = {r.name: r for r in evaluator.rules()}
    assert rules["cpu_motherboard_socket"].scope == "pair"
    assert rules["dimm_count"].scope == "aggregate"
    assert set(rules["cpu_motherboard_socket"].subject_types) == {"cpu", "motherboard"}


def test_estimate_system_power():
    assert estimate_system_power([xeon("C1"), spec("nic", "N1", tdp_w=20)]) == int((205 + 20 + 120) * 1.35)


def test_undeclared_board_capacity_is_undetermined_not_failure():
    board = BOARD.model_copy(update={"memory_slots": None, "pcie_slots": None})
    modules = [ddr5_module(f"R{i}") for i in range(1, 7)]
    ram = evaluator.evaluate(ddr5_module("R7"), [board, *modules])
    assert ram.compatible
    assert "slot_capacity_undetermined" in ram.warning_kinds

    card = evaluator.evaluate(spec("pciecard", "GPU", pcie_width="x16"), [board])
    assert card.compatible
    warning = next(w for w in card.warnings if w.kind == "slot_capacity_undetermined")
    assert warning.category == "data"
    assert warning.details["slot_class"] == "pcie"

    sas = evaluator.evaluate(spec("storage", "S1", storage_interface="SAS"), [BOARD])
    assert sas.compatible
    assert "slot_capacity_undetermined" in sas.warning_kinds


def test_declared_empty_pcie_slots_still_blocks_cards():
    board = BOARD.model_copy(update={"pcie_slots": {}, "sas_ports": 0})
    card = evaluator.evaluate(spec("nic", "N1", pcie_width="x8"), [board])
    assert "slot_width_unavailable" in card.failure_kinds
    sas = evaluator.evaluate(spec("storage", "S1", storage_interface="SAS"), [board])
    assert "storage_port_unavailable" in sas.failure_kinds
