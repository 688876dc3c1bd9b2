#!/usr/bin/env python3
"""
Example usage of pybal

Loads a BAL problem (or synthesizes one), normalizes and perturbs it, runs
bundle adjustment and writes PLY files of the initial and final estimates.

    python example_usage.py [problem-16-22106-pre.txt] [output_dir]
"""

import logging
import sys
from pathlib import Path

from pybal import BALProblem, SolverOptions
from pybal.bal_problem import make_synthetic_problem


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    if len(sys.argv) > 1:
        problem = BALProblem.load(sys.argv[1])
    else:
        print("No BAL file given, using a synthetic problem")
        problem = make_synthetic_problem(num_cameras=8, num_points=400)
    output_dir = Path(sys.argv[2]) if len(sys.argv) > 2 else Path("results")
    output_dir.mkdir(parents=True, exist_ok=True)

    print(f"Bundle adjustment: {problem.num_cameras} cameras, {problem.num_points} points, "
          f"{problem.num_observations} observations")

    problem.normalize()
    problem.perturb(0.1, 0.5, 0.5, seed=1)
    problem.write_ply(output_dir / "initial.ply")

    options = SolverOptions(max_num_iterations=40, minimizer_progress_to_stdout=True)
    summary = problem.solve(options)
    print(summary.full_report())

    problem.write_ply(output_dir / "final.ply")
    problem.write(output_dir / "final.txt")


if __name__ == "__main__":
    main()
