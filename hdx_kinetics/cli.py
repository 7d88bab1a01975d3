"""
Command-line interface for hdx_kinetics.

Usage:
    hdx-kinetics --input uptake_long.csv --output-dir results/ [options]
    hdx-kinetics --input uptake_wide.csv --wide --output-dir results/
"""

from __future__ import annotations

import argparse
import logging
import os
import sys

import pandas as pd

from .errors import ConfigurationError, ModerationError
from .fitting import FitControl
from .formulas import FORMS
from .pipeline import differential_uptake
from .series import DEFAULT_DESIGN_PATTERN, parse_design, wide_to_long


def _key_values(items, what):
    out = {}
    for item in items or []:
        name, sep, value = item.partition("=")
        if not sep:
            raise ConfigurationError(f"Expected NAME=VALUE for {what}, got {item!r}")
        try:
            out[name.strip()] = float(value)
        except ValueError:
            raise ConfigurationError(f"Non-numeric value in {what} {item!r}") from None
    return out


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="hdx-kinetics",
        description="Differential HDX uptake kinetics testing with empirical-Bayes moderation",
    )
    parser.add_argument("--input", required=True,
                        help="CSV of observations (long format: feature,time,condition,replicate,response)")
    parser.add_argument("--wide", action="store_true",
                        help="Input is wide (one row per feature, one column per sample)")
    parser.add_argument("--design-pattern", default=DEFAULT_DESIGN_PATTERN,
                        help="Regex with named groups time/replicate/condition for wide column names")
    parser.add_argument("--output-dir", default="hdx_results",
                        help="Directory to write results and diagnostics CSVs (default: hdx_results)")
    parser.add_argument("--form", default="weibull", choices=sorted(FORMS))
    parser.add_argument("--by-condition", default=None,
                        help="Comma-separated parameters fitted per condition (default: all free)")
    parser.add_argument("--fix", action="append", metavar="NAME=VALUE",
                        help="Hold a parameter at a constant value (repeatable)")
    parser.add_argument("--start", action="append", metavar="NAME=VALUE",
                        help="Starting value for a parameter (repeatable)")
    parser.add_argument("--solver",    default="trf", choices=["trf", "lm", "dogbox"])
    parser.add_argument("--max-nfev",  type=int,   default=1000)
    parser.add_argument("--ftol",      type=float, default=1e-8)
    parser.add_argument("--n-jobs",    type=int,   default=1)
    parser.add_argument("--no-moderation", action="store_true",
                        help="Test each feature on its own residual variance")
    parser.add_argument("--reference", default="F", choices=["F", "chi2"],
                        help="Reference distribution for unmoderated tests")
    parser.add_argument("--fdr-method", default="fdr_bh")
    parser.add_argument("--conf-level", type=float, default=0.95)
    parser.add_argument("--alpha",      type=float, default=0.05,
                        help="Adjusted p-value threshold used in the printed summary")
    parser.add_argument("-v", "--verbose", action="store_true")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.wide:
            wide = pd.read_csv(args.input, index_col=0)
            observations = wide_to_long(wide, parse_design(wide.columns, args.design_pattern))
        else:
            observations = pd.read_csv(args.input)

        by_condition = None
        if args.by_condition:
            by_condition = [p.strip() for p in args.by_condition.split(",") if p.strip()]

        results, batch, moderation = differential_uptake(
            observations,
            form=args.form,
            by_condition=by_condition,
            fixed=_key_values(args.fix, "--fix"),
            start=_key_values(args.start, "--start"),
            control=FitControl(method=args.solver, max_nfev=args.max_nfev, ftol=args.ftol),
            moderated=not args.no_moderation,
            reference=args.reference,
            method=args.fdr_method,
            conf_level=args.conf_level,
            n_jobs=args.n_jobs,
        )
    except (ConfigurationError, ModerationError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    os.makedirs(args.output_dir, exist_ok=True)

    results_path = os.path.join(args.output_dir, "results.csv")
    results.to_csv(results_path)
    diagnostics_path = os.path.join(args.output_dir, "diagnostics.csv")
    batch.diagnostics.to_csv(diagnostics_path, index=False)

    n_sig = int((results["p_adjusted"] <= args.alpha).sum())
    print(f"Results saved to {results_path}")
    print(f"  Features requested: {len(results)}")
    print(f"  Tested:             {batch.n_tested}")
    print(f"  Not tested:         {len(results) - batch.n_tested} (see {diagnostics_path})")
    print(f"  Significant (adj. p <= {args.alpha}): {n_sig}")
    if moderation is not None:
        print(f"  Variance prior: d0 = {moderation.prior_df:.3g}, "
              f"s0^2 = {moderation.prior_variance:.3g}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
