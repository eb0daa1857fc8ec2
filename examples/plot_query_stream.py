#!/usr/bin/env python3
"""
Acceptance rate and learning cost per episode of a smart-equilibrium run.

Writes ``query_stream.pdf`` next to this script.
"""

from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from odml.equilibrium import GibbsEnergySolver
from odml.lifecycle import run_query_stream
from odml.perturbations import PerturbationSpec, perturb_conditions
from odml.problem import Conditions
from odml.toolbox import EngineOptions, SmartEquilibriumSolver

from run_smart_equilibrium import dinitrogen_tetroxide


def collect(radius, num_queries=600, episode_size=50):
    system, thermo = dinitrogen_tetroxide()
    oracle = GibbsEnergySolver(system, thermo)
    base = Conditions(temperature=320.0, pressure=1.0e5, amounts=[1.0])
    spec = PerturbationSpec(kind="relative", temperature_scale=0.05, pressure_scale=0.3, seed=4)
    queries = [perturb_conditions(base, spec, i) for i in range(num_queries)]
    solver = SmartEquilibriumSolver(system, oracle, EngineOptions(distance_radius=radius, error_tolerance=radius))
    return run_query_stream(solver, queries, episode_size=episode_size)


def main():
    radii = (0.01, 0.03, 0.1)
    fig, (ax_acc, ax_store) = plt.subplots(1, 2, figsize=(10, 4), facecolor="white")
    for radius in radii:
        metrics = collect(radius)
        episodes = np.array([m["episode"] for m in metrics])
        ax_acc.plot(episodes, [m["acceptance_rate"] for m in metrics], marker="o", label=f"radius {radius:g}")
        ax_store.plot(episodes, [m["store_size"] for m in metrics], marker="s", label=f"radius {radius:g}")

    ax_acc.set_xlabel("episode")
    ax_acc.set_ylabel("acceptance rate")
    ax_acc.set_ylim(0.0, 1.05)
    ax_store.set_xlabel("episode")
    ax_store.set_ylabel("stored references")
    ax_acc.legend(frameon=False)
    ax_acc.grid(alpha=0.3)
    ax_store.grid(alpha=0.3)
    plt.tight_layout()

    out_path = Path(__file__).resolve().parent / "query_stream.pdf"
    fig.savefig(out_path, format="pdf", bbox_inches="tight")
    print(f"Saved {out_path}")
    plt.show()


if __name__ == "__main__":
    main()
