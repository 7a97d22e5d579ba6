"""
LSTO - Level-Set Stress Minimization
Entry Point

Runs the L-beam benchmark: minimize the p-norm von Mises stress of an
L-shaped beam, clamped at the top and loaded at the tip, under a maximum
material area fraction.
"""

import argparse
import json
import logging
import sys
import uuid
from dataclasses import asdict
from pathlib import Path

from src.lsto.core.geometry import create_lbeam_domain
from src.lsto.core.loads import create_lbeam_load_case
from src.lsto.core.errors import LSTOError
from src.lsto.logging_config import setup_logging
from src.lsto.numerical.fem import ElasticitySolver, MaterialProperties
from src.lsto.numerical.level_set import LevelSet, Boundary
from src.lsto.numerical.sensitivity import SensitivityEngine, SensitivityField
from src.lsto.numerical.subsolver import NewtonRaphsonSubsolver
from src.lsto.numerical.topopt import StressOptimizer, StressParams
from src.lsto.recorder import ResultsRecorder

logger = logging.getLogger("src.lsto.main")


def run_lbeam(args: argparse.Namespace) -> dict:
    """
    Run the L-beam stress minimization and save its metadata.

    Returns:
        Run metadata (also written to <output-dir>/metadata.json)
    """
    run_id = str(uuid.uuid4())[:8]
    verbose = not args.quiet

    if verbose:
        print("=" * 60)
        print("LSTO - L-Beam Stress Minimization")
        print(f"Run ID: {run_id}")
        print("=" * 60)

    # 1. Problem definition
    domain = create_lbeam_domain(n_elements=args.n_elements)
    load_case = create_lbeam_load_case(domain)
    material = MaterialProperties()
    if verbose:
        print(f"\nDomain: {domain.nelx} x {domain.nely}, design area {domain.mesh_area:.0f}")
        print(f"Load case: {load_case.name}")

    # 2. Parameters
    params = StressParams(
        max_iterations=args.max_iter,
        max_area=args.max_area,
        p_norm=args.p_norm,
        sensitivity_field=SensitivityField[args.field.upper()],
    )

    # 3. Engines
    level_set = LevelSet(domain, move_limit=params.move_limit, band_width=params.band_width)
    boundary = Boundary(level_set)
    solver = ElasticitySolver(domain, material=material, method=args.method)
    sensitivity = SensitivityEngine(solver)
    subsolver = NewtonRaphsonSubsolver()
    output_dir = Path(args.output_dir)
    recorder = ResultsRecorder(output_dir)

    optimizer = StressOptimizer(
        domain=domain,
        load_case=load_case,
        level_set=level_set,
        boundary=boundary,
        solver=solver,
        sensitivity=sensitivity,
        subsolver=subsolver,
        recorder=recorder,
        params=params,
        verbose=verbose,
    )

    # 4. Run
    result = optimizer.run()

    # 5. Metadata
    parameters = asdict(params)
    parameters["sensitivity_field"] = params.sensitivity_field.name
    metadata = {
        "case": "L-beam",
        "run_id": run_id,
        "n_elements": args.n_elements,
        "solve_method": args.method,
        "parameters": parameters,
        "objective_final": float(result.final_objective),
        "area_fraction_final": float(result.final_area_fraction),
        "iterations": result.iterations,
        "converged": result.converged,
        "termination_reason": result.termination_reason.value,
        "elapsed_time_s": result.elapsed_time,
    }
    output_dir.mkdir(parents=True, exist_ok=True)
    with open(output_dir / "metadata.json", "w") as f:
        json.dump(metadata, f, indent=2)
    logger.info("Run %s finished: %d iterations, converged=%s", run_id, result.iterations, result.converged)

    if verbose:
        print(f"\nResults saved to {output_dir}/")
        print(f"  - history/history.txt")
        print(f"  - level_set/, area_fractions/, boundary_segments/")
        print(f"  - metadata.json")

    return metadata


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Level-set stress minimization of the L-beam",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
            Examples:
            # L-beam benchmark (100 x 100, 40% area, p = 6)
            python main.py

            # Coarser grid, short run
            python main.py --n-elements 50 --max-iter 100
                    """
    )
    parser.add_argument(
        "--n-elements", "-n",
        type=int,
        default=100,
        help="Elements per side of the bounding square (default: 100)"
    )
    parser.add_argument(
        "--max-iter",
        type=int,
        default=500,
        help="Maximum iterations (default: 500)"
    )
    parser.add_argument(
        "--max-area",
        type=float,
        default=0.4,
        help="Maximum material area fraction (default: 0.4)"
    )
    parser.add_argument(
        "--p-norm",
        type=float,
        default=6.0,
        help="P-norm exponent of the stress aggregation (default: 6)"
    )
    parser.add_argument(
        "--field",
        choices=["stress", "compliance"],
        default="stress",
        help="Sensitivity field driving the boundary (default: stress)"
    )
    parser.add_argument(
        "--method",
        choices=["direct", "iterative"],
        default="direct",
        help="FE linear solver (default: direct)"
    )
    parser.add_argument(
        "--output-dir", "-o",
        type=str,
        default="results",
        help="Output directory for history and snapshots"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level (default: INFO)"
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Optional log file"
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Do not print the iteration table"
    )

    args = parser.parse_args()
    setup_logging(getattr(logging, args.log_level), args.log_file)

    try:
        run_lbeam(args)
    except LSTOError as e:
        stage = e.stage.name if e.stage is not None else "setup"
        print(f"\n❌ Optimization failed at iteration {e.iteration} ({stage}): {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
