"""
Example usage of hdx_kinetics on a simulated differential HDX experiment.

This script demonstrates the full pipeline:
1. Simulate deuterium uptake for 200 peptides in two states (apo, holo)
2. Run differential_uptake() with empirical-Bayes moderation
3. Print summary statistics and inspect one fitted curve
4. Save the results table

Run from the repository root after installing:
    pip install -e ".[dev]"
    python examples/example_usage.py
"""

import os
import numpy as np
import pandas as pd

import hdx_kinetics as hdx

OUTPUT_DIR = "hdx_example_output"
TIMES = [0.0, 10.0, 30.0, 60.0, 300.0, 900.0, 3600.0]

# ---------------------------------------------------------------------------
# Simulate uptake: 20 peptides are protected (slower exchange) in holo
# ---------------------------------------------------------------------------
print("Simulating data...")
rng = np.random.default_rng(2024)
rows = []
for i in range(200):
    a = rng.uniform(2, 12)
    b = rng.uniform(0.002, 0.05)
    for state in ["apo", "holo"]:
        b_s = b / 3 if (state == "holo" and i < 20) else b
        for rep in [1, 2, 3]:
            for t in TIMES:
                rows.append({
                    "feature": f"PEP{i:03d}",
                    "time": t,
                    "condition": state,
                    "replicate": rep,
                    "response": a * (1 - np.exp(-b_s * t)) + rng.normal(0, 0.1),
                })
data = pd.DataFrame(rows)
print(f"  Observations: {len(data)}")
print(f"  Peptides:     {data['feature'].nunique()}")

# ---------------------------------------------------------------------------
# Run the pipeline
# ---------------------------------------------------------------------------
print("\nFitting null/alternative models and testing...")
results, batch, moderation = hdx.differential_uptake(
    data,
    form="weibull",
    fixed={"d": 0.0},
    by_condition=["a", "b"],
    start={"b": 0.01},
    moderated=True,
    method="fdr_bh",
    n_jobs=1,
)

print(f"  Tested:       {batch.n_tested}")
print(f"  Not tested:   {len(results) - batch.n_tested}")
print(f"  Prior df:     {moderation.prior_df:.3g}")
print(f"  Prior var:    {moderation.prior_variance:.3g}")
sig = results["p_adjusted"] < 0.05
print(f"  Significant at 5% FDR: {sig.sum()}")
print(f"  True positives among them: {sig.loc['PEP000':'PEP019'].sum()} / 20")

if not batch.diagnostics.empty:
    print("\nDiagnostics:")
    print(batch.diagnostics.to_string(index=False))

# ---------------------------------------------------------------------------
# Inspect one feature
# ---------------------------------------------------------------------------
unit = batch.unit("PEP000")
print("\nPEP000 alternative model:")
print(unit.alt.summary().round(4).to_string())
grid = np.linspace(0, 3600, 5)
for state in unit.alt.condition_levels:
    print(f"  {state}: {np.round(unit.alt.predict(grid, state), 3)}")

# ---------------------------------------------------------------------------
# Save results CSV
# ---------------------------------------------------------------------------
os.makedirs(OUTPUT_DIR, exist_ok=True)
out_csv = os.path.join(OUTPUT_DIR, "differential_uptake_results.csv")
results.to_csv(out_csv)
print(f"\nResults saved to {out_csv}")
