"""兼容性检查模块 - Compatibility Evaluator"""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

from ..schemas import AttributeSource, CompatibilityResult, ComponentSpec, RuleInfo
from .rules import (
    AGGREGATE_RULES,
    PAIR_RULES,
    SCORE_INFERRED,
    SCORE_UNDETERMINED,
    AggregateRule,
    PairRule,
    Verdict,
)

logger = logging.getLogger(__name__)


class CompatibilityEvaluator:
    """
    兼容性评估器 - Compatibility Evaluator

    纯函数：只读取传入的规格快照，不访问库存或数据库。候选组件与每个已有组件逐对检查，
    再在 "已有 + 候选" 集合上运行聚合规则，因此结论与添加顺序无关。
    Pure: works on the given spec snapshot only. The candidate is checked pairwise
    against every present component and aggregate rules run over existing + candidate,
    so the verdict does not depend on insertion order.

    分数为所有已评估组合的最小值（没有可评估组合时为 100）。
    The score is the minimum over every evaluated link (100 when nothing was evaluated).
    """

    def __init__(
        self,
        pair_rules: Sequence[PairRule] = tuple(PAIR_RULES),
        aggregate_rules: Sequence[AggregateRule] = tuple(AGGREGATE_RULES),
    ):
        self.pair_rules = list(pair_rules)
        self.aggregate_rules = list(aggregate_rules)

    def evaluate(self, candidate: ComponentSpec, existing: Iterable[ComponentSpec]) -> CompatibilityResult:
        present = [s for s in existing if s.ref != candidate.ref]
        verdict = Verdict()
        for other in present:
            self._check_pair(candidate, other, verdict)

        aggregate = Verdict()
        self._run_aggregates([*present, candidate], aggregate)
        verdict.merge(aggregate.involving(candidate.ref))

        result = verdict.result()
        logger.debug(
            "evaluate %s against %d components: compatible=%s score=%.0f failures=%s",
            candidate.ref,
            len(present),
            result.compatible,
            result.score,
            result.failure_kinds,
        )
        return result

    def evaluate_configuration(self, specs: Sequence[ComponentSpec]) -> CompatibilityResult:
        """对整个配置评估所有组合与聚合规则 - evaluate every link and aggregate of a configuration"""
        verdict = Verdict()
        for i, left in enumerate(specs):
            for right in specs[i + 1:]:
                if left.ref != right.ref:
                    self._check_pair(left, right, verdict)
        self._run_aggregates(list(specs), verdict)
        return verdict.result()

    def check_pair(self, a: ComponentSpec, b: ComponentSpec) -> CompatibilityResult:
        verdict = Verdict()
        self._check_pair(a, b, verdict)
        return verdict.result()

    def rules(self) -> List[RuleInfo]:
        return [r.info() for r in self.pair_rules] + [r.info() for r in self.aggregate_rules]

    def _check_pair(self, a: ComponentSpec, b: ComponentSpec, verdict: Verdict) -> None:
        applicable = [(rule, rule.orient(a, b)) for rule in self.pair_rules]
        applicable = [(rule, pair) for rule, pair in applicable if pair is not None]
        if not applicable:
            return

        refs = [a.ref, b.ref]
        unknown = [s for s in (a, b) if s.source == AttributeSource.UNKNOWN]
        if unknown:
            # 缺少规格数据：不判定兼容或不兼容
            for spec in unknown:
                if spec.lookup_error:
                    verdict.warn(
                        "oracle_unavailable",
                        f"specification lookup for {spec.ref} failed: {spec.lookup_error}",
                        refs,
                        cap=SCORE_UNDETERMINED,
                        category="data",
                    )
                else:
                    verdict.warn(
                        "requirements_undetermined",
                        f"no specification data for {spec.ref}, compatibility with the other side is undetermined",
                        refs,
                        cap=SCORE_UNDETERMINED,
                        category="data",
                    )
            return

        for rule, pair in applicable:
            assert pair is not None
            left, right = pair
            rule.check(left, right, verdict)
            inferred = rule.fields and (left.is_inferred(*rule.fields) or right.is_inferred(*rule.fields))
            if inferred and not verdict.has_warning("inferred_attributes", refs):
                verdict.warn(
                    "inferred_attributes",
                    f"{rule.name} relies on attributes inferred from inventory notes",
                    refs,
                    cap=SCORE_INFERRED,
                    category="data",
                    rule=rule.name,
                )

    def _run_aggregates(self, specs: List[ComponentSpec], verdict: Verdict) -> None:
        for rule in self.aggregate_rules:
            rule.check(specs, verdict)


def estimate_system_power(specs: Iterable[ComponentSpec]) -> int:
    """估算系统所需电源功率

    Args:
        specs: 配置中的组件规格

    Returns:
        建议的电源功率（W）
    """
    # 基础功耗 + 其他配件约 120W + 35% 余量
    return int((sum(s.tdp_w or 0 for s in specs) + 120) * 1.35)
