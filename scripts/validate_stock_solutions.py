#!/usr/bin/env python3
"""
Stock Solution Planner Validation Script
Runs randomized multi-target scenarios through the optimizer and the
Progressive-K planner and summarizes feasibility, tank counts and issues.
"""
import sys
import os
import random
import json
import logging
import time
from collections import Counter
from typing import List, Dict, Any

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from hydrodoser.schemas.hydro_schemas import StockPlanOptions, StockTarget
from hydrodoser.services.hydro_catalog import get_default_catalog
from hydrodoser.services.hydro_ion_balance import get_ion_balance_status
from hydrodoser.services.hydro_stock_tanks_service import plan_stock_solutions

logger = logging.getLogger(__name__)

STAGE_RATIOS = [
    {"name": "Lettuce", "ratio": {"N": 3.0, "P": 0.6, "K": 3.5, "Ca": 2.5, "Mg": 0.6, "S": 0.8}, "ec": 1.4},
    {"name": "Tomato vegetative", "ratio": {"N": 3.2, "P": 1.0, "K": 3.6, "Ca": 3.0, "Mg": 0.8, "S": 1.0}, "ec": 2.2},
    {"name": "Tomato fruiting", "ratio": {"N": 3.0, "P": 1.0, "K": 5.0, "Ca": 3.3, "Mg": 1.0, "S": 1.6}, "ec": 2.8},
    {"name": "Cucumber", "ratio": {"N": 4.0, "P": 1.0, "K": 4.5, "Ca": 3.5, "Mg": 0.8, "S": 1.0}, "ec": 2.0},
    {"name": "Pepper", "ratio": {"N": 3.5, "P": 1.0, "K": 4.4, "Ca": 3.2, "Mg": 0.9, "S": 1.2}, "ec": 2.3},
    {"name": "Strawberry", "ratio": {"N": 2.4, "P": 1.0, "K": 4.0, "Ca": 2.2, "Mg": 0.8, "S": 1.0}, "ec": 1.6},
    {"name": "Seedling", "ratio": {"N": 2.0, "P": 1.0, "K": 2.0, "Ca": 2.0, "Mg": 0.5, "S": 0.7}, "ec": 1.0},
    {"name": "Basil", "ratio": {"N": 4.0, "P": 1.0, "K": 3.2, "Ca": 2.4, "Mg": 0.6, "S": 0.8}, "ec": 1.6},
]

FERTILIZER_SETS = [
    ["calcium_nitrate_calcinit_typical", "potassium_nitrate_typical", "mkp_typical",
     "magnesium_sulfate_heptahydrate_common"],
    ["calcium_nitrate_calcinit_typical", "potassium_nitrate_typical", "mkp_typical",
     "magnesium_sulfate_heptahydrate_common", "potassium_sulfate_common", "map_typical"],
    ["calcium_nitrate_calcinit_typical", "potassium_nitrate_typical", "map_typical",
     "magnesium_nitrate_hexahydrate_typical", "potassium_sulfate_common", "mkp_typical"],
]

BASELINE_ECS = [0.0, 0.2, 0.4, 0.6]
STOCK_CONCENTRATIONS = [50, 100, 150, 200]


def build_targets(rng: random.Random, count: int) -> List[StockTarget]:
    targets = []
    for i, stage in enumerate(rng.sample(STAGE_RATIOS, count)):
        jittered = {key: round(value * rng.uniform(0.9, 1.1), 3) for key, value in stage["ratio"].items()}
        targets.append(StockTarget(
            id=f"{i + 1}_{stage['name'].lower().replace(' ', '_')}",
            ratio=jittered,
            target_ec=round(stage["ec"] * rng.uniform(0.9, 1.1), 2),
        ))
    return targets


def run_validation(num_tests: int = 50, seed: int = 42) -> Dict[str, Any]:
    rng = random.Random(seed)
    catalog = get_default_catalog()

    stats = {
        "total_tests": num_tests,
        "feasible": 0,
        "infeasible": 0,
        "crashed": 0,
        "tanks_used": Counter(),
        "error_codes": Counter(),
        "warning_codes": Counter(),
        "ion_balance": Counter(),
        "max_ec_error_pct": 0.0,
        "elapsed_ms": [],
    }
    scenarios = []

    for test_id in range(1, num_tests + 1):
        targets = build_targets(rng, rng.randint(1, 3))
        fertilizers = rng.choice(FERTILIZER_SETS)
        options = StockPlanOptions(
            stock_concentration=rng.choice(STOCK_CONCENTRATIONS),
            baseline_ec=rng.choice(BASELINE_ECS),
        )

        started = time.perf_counter()
        try:
            result = plan_stock_solutions(targets, fertilizers, options, catalog=catalog)
        except Exception as e:
            logger.exception(f"[Validation] Scenario {test_id} crashed")
            stats["crashed"] += 1
            scenarios.append({"id": test_id, "targets": [t.id for t in targets], "crash": str(e)})
            continue
        elapsed = (time.perf_counter() - started) * 1000
        stats["elapsed_ms"].append(elapsed)

        stats["error_codes"].update(issue["code"] for issue in result.get("errors", []))
        stats["warning_codes"].update(issue["code"] for issue in result.get("warnings", []))

        if result["success"]:
            stats["feasible"] += 1
            stats["tanks_used"][result["meta"]["progressive_k"]] += 1
            for instruction in result["dosing"]:
                balance = instruction["predicted"]["ion_balance"]
                stats["ion_balance"][get_ion_balance_status(balance["imbalance"])] += 1
                ec_error = abs(instruction["predicted"]["ec"] - instruction["target_ec"]) / instruction["target_ec"] * 100
                stats["max_ec_error_pct"] = max(stats["max_ec_error_pct"], ec_error)
        else:
            stats["infeasible"] += 1

        scenarios.append({
            "id": test_id,
            "targets": [t.id for t in targets],
            "fertilizers": fertilizers,
            "stock_concentration": options.stock_concentration,
            "baseline_ec": options.baseline_ec,
            "success": result["success"],
            "tanks": sorted(result.get("tanks", {})),
            "errors": [issue["code"] for issue in result.get("errors", [])],
            "elapsed_ms": round(elapsed, 1),
        })

    return {
        "stats": {
            **stats,
            "tanks_used": dict(stats["tanks_used"]),
            "error_codes": dict(stats["error_codes"]),
            "warning_codes": dict(stats["warning_codes"]),
            "ion_balance": dict(stats["ion_balance"]),
        },
        "scenarios": scenarios,
    }


def generate_report(validation: Dict) -> str:
    stats = validation["stats"]
    total = stats["total_tests"]
    timings = stats["elapsed_ms"]

    report = []
    report.append("=" * 80)
    report.append("STOCK SOLUTION PLANNER VALIDATION")
    report.append("=" * 80)
    report.append("")
    report.append(f"Scenarios:   {total}")
    report.append(f"Feasible:    {stats['feasible']} ({stats['feasible'] / total * 100:.1f}%)")
    report.append(f"Infeasible:  {stats['infeasible']}")
    report.append(f"Crashed:     {stats['crashed']}")
    if timings:
        report.append(f"Avg time:    {sum(timings) / len(timings):.0f} ms (max {max(timings):.0f} ms)")
    report.append("")

    report.append("-" * 80)
    report.append("TANK COUNT (feasible plans)")
    report.append("-" * 80)
    for k in sorted(stats["tanks_used"]):
        report.append(f"  K={k}: {stats['tanks_used'][k]}")
    report.append("")

    report.append("-" * 80)
    report.append("ISSUES")
    report.append("-" * 80)
    for code, count in sorted(stats["error_codes"].items(), key=lambda item: -item[1]):
        report.append(f"  error    {code:<24} {count}")
    for code, count in sorted(stats["warning_codes"].items(), key=lambda item: -item[1]):
        report.append(f"  warning  {code:<24} {count}")
    report.append("")

    report.append("-" * 80)
    report.append("ION BALANCE (per dosing instruction)")
    report.append("-" * 80)
    for status in ("balanced", "caution", "imbalanced"):
        report.append(f"  {status:<12} {stats['ion_balance'].get(status, 0)}")
    report.append(f"  Max EC deviation: {stats['max_ec_error_pct']:.2f}%")
    report.append("")

    report.append("=" * 80)
    report.append("CONCLUSION")
    report.append("=" * 80)
    if stats["crashed"] == 0:
        report.append("OK  No scenario raised an exception.")
    else:
        report.append(f"!!  {stats['crashed']} scenarios raised exceptions.")
    if stats["max_ec_error_pct"] <= 5.0:
        report.append("OK  Every feasible plan predicts EC within 5% of target.")
    else:
        report.append(f"!!  EC deviation up to {stats['max_ec_error_pct']:.1f}%.")

    return "\n".join(report)


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    print("Running stock solution planner validation (50 scenarios)...")
    print("")

    validation = run_validation(num_tests=50, seed=42)

    report = generate_report(validation)
    print(report)

    with open("stock_solutions_validation_report.txt", "w", encoding="utf-8") as f:
        f.write(report)

    with open("stock_solutions_validation_data.json", "w", encoding="utf-8") as f:
        json.dump(validation, f, indent=2)

    print("\nGenerated files:")
    print("- stock_solutions_validation_report.txt")
    print("- stock_solutions_validation_data.json")
