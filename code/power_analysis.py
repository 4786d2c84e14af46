"""
SDT Power Analysis: point estimates vs fixed vs hierarchical probit models

This script:
1. Simulates a yes/no recognition dataset with subject and item effects
2. Computes per-subject d-prime and criterion and tests them with t-tests
3. Fits a fixed-effects and a hierarchical Bayesian probit model
4. Appends every table to the CSV files in the output folder
5. Repeats for N replications, then reads the files back and reports the
   power of each approach (fraction of replications with a significant effect)

Usage:
  python power_analysis.py --replications 100 --seed 1
  python power_analysis.py --power-only
  python power_analysis.py --data ../data/trials.csv
"""

import argparse
import os
from pathlib import Path

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

from sdt_sim import (simulate_trials, read_trials, compute_sdt_point_estimates,
                     summarize_point_estimates)
from sdt_models import (build_fixed_model, build_mixed_model, fit_model, check_convergence,
                        summarize_coefficients, evaluate_hypotheses)

OUTPUT_DIR = Path('output')

OUTPUT_FILES = {
    'trials': 'trials.csv',
    'sdt_subjects': 'sdt_subjects.csv',
    'sdt_population': 'sdt_population.csv',
    'fixed_coefficients': 'fixed_coefficients.csv',
    'mixed_coefficients': 'mixed_coefficients.csv',
    'fixed_hypotheses': 'fixed_hypotheses.csv',
    'mixed_hypotheses': 'mixed_hypotheses.csv'
}

# Approach name -> (hypothesis file, coefficient file used for convergence)
APPROACHES = {
    'point_estimate': ('sdt_population', None),
    'fixed': ('fixed_hypotheses', 'fixed_coefficients'),
    'mixed': ('mixed_hypotheses', 'mixed_coefficients')
}

TARGET_POWER = 0.80


def append_csv(df, path):
    """Append a table to a CSV file, writing the header only for a new file."""
    path = Path(path)
    os.makedirs(path.parent, exist_ok=True)
    exists = path.exists()
    df.to_csv(path, mode='a' if exists else 'w', header=not exists, index=False)
    return path


def _tag(df, replication, model=None):
    df = df.copy()
    if model is not None:
        df.insert(0, 'model', model)
    if 'replication' not in df.columns:
        df.insert(0, 'replication', replication)
    return df


def analyze_dataset(trials, replication=0, alpha=0.05, correction='loglinear',
                    sampler_settings=None, random_seed=None, display=True):
    """Run the point-estimate and model-based analyses on one dataset.

    Args:
        trials: Trial table from simulate_trials or read_trials
        replication: Replication index stored with every row
        alpha: Significance level for t-tests and credible intervals
        correction: Rate correction for the point estimates
        sampler_settings: Overrides for sdt_models.SAMPLER_SETTINGS
        random_seed: Seed passed to the sampler
        display: Whether to print progress and results

    Returns:
        Dict mapping OUTPUT_FILES keys (except 'trials') to DataFrames
    """
    results = {}
    sampler_settings = dict(sampler_settings or {})
    sampler_settings.setdefault('progressbar', display)

    # Classical SDT point estimates
    if display:
        print("\nComputing SDT point estimates...")
    sdt = compute_sdt_point_estimates(trials, correction=correction)
    population = summarize_point_estimates(sdt, alpha=alpha)
    results['sdt_subjects'] = _tag(sdt, replication)
    results['sdt_population'] = _tag(population, replication)

    if display:
        print("\nPopulation-level point estimates:")
        print(population.round(3))

    # Bayesian probit models
    builders = {
        'fixed': lambda: build_fixed_model(trials),
        'mixed': lambda: build_mixed_model(trials, display=display)
    }
    for name, build in builders.items():
        if display:
            print(f"\nFitting {name}-effects probit model...")
        trace = fit_model(build(), sampler_settings=sampler_settings, random_seed=random_seed)
        diagnostics = check_convergence(trace, display=display)

        coefficients = summarize_coefficients(trace, ci=1 - alpha)
        coefficients['converged'] = diagnostics['converged']
        coefficients['n_divergent'] = diagnostics['n_divergent']
        hypotheses = evaluate_hypotheses(trace, alpha=alpha)

        results[f'{name}_coefficients'] = _tag(coefficients, replication, model=name)
        results[f'{name}_hypotheses'] = _tag(hypotheses, replication, model=name)

        if display:
            print(f"\n{name.capitalize()} model hypothesis tests:")
            print(hypotheses.round(3))

    return results


def write_results(tables, output_dir=OUTPUT_DIR):
    """Append each table to its output file."""
    return {key: append_csv(df, Path(output_dir) / OUTPUT_FILES[key])
            for key, df in tables.items()}


def run_replication(replication, params=None, seed=None, output_dir=OUTPUT_DIR,
                    alpha=0.05, sampler_settings=None, display=True):
    """Simulate, analyze and save one replication."""
    trials = simulate_trials(params, seed=seed, replication=replication, display=display)
    tables = {'trials': trials}
    tables.update(analyze_dataset(trials, replication=replication, alpha=alpha,
                                  sampler_settings=sampler_settings,
                                  random_seed=seed, display=display))
    write_results(tables, output_dir)
    return tables


def compute_power(output_dir=OUTPUT_DIR, display=True):
    """Read the hypothesis tables back and compute power per approach.

    Returns:
        DataFrame with one row per approach x hypothesis
    """
    output_dir = Path(output_dir)

    rows = []
    for approach, (hypothesis_key, coefficient_key) in APPROACHES.items():
        path = output_dir / OUTPUT_FILES[hypothesis_key]
        if not path.exists():
            raise FileNotFoundError(f"No results found at {path}; run the simulation first")
        results = pd.read_csv(path)

        convergence_rate = np.nan
        if coefficient_key is not None:
            coefficient_path = output_dir / OUTPUT_FILES[coefficient_key]
            if coefficient_path.exists():
                coefficients = pd.read_csv(coefficient_path)
                convergence_rate = coefficients.groupby('replication')['converged'].first().mean()

        for hypothesis, group in results.groupby('hypothesis', sort=False):
            rows.append({
                'approach': approach,
                'hypothesis': hypothesis,
                'n_replications': group['replication'].nunique(),
                'power': group['significant'].astype(bool).mean(),
                'mean_estimate': group['estimate'].mean(),
                'sd_estimate': group['estimate'].std(),
                'convergence_rate': convergence_rate
            })

    power = pd.DataFrame(rows)
    power.to_csv(output_dir / 'power.csv', index=False)

    if display:
        print("\n" + "=" * 50)
        print("EMPIRICAL POWER")
        print("=" * 50)
        print(power.pivot(index='hypothesis', columns='approach', values='power').round(3))
        for _, row in power[power['power'] >= TARGET_POWER].iterrows():
            print(f"  {row['approach']}: {row['hypothesis']} reaches "
                  f"{TARGET_POWER * 100:.0f}% power ({row['power']:.2f})")

    return power


def plot_power(power, output_dir=OUTPUT_DIR, show=False):
    """Bar chart of power by hypothesis and analysis approach."""
    fig, ax = plt.subplots(figsize=(10, 6))
    sns.barplot(data=power, x='hypothesis', y='power', hue='approach', ax=ax)
    ax.axhline(TARGET_POWER, color='red', linestyle='--', alpha=0.7)
    ax.set_ylim(0, 1)
    ax.set_ylabel('Power (proportion significant)')
    ax.set_xlabel('Hypothesis')
    n = int(power['n_replications'].max())
    ax.set_title(f'Empirical power across {n} replications')
    plt.tight_layout()

    os.makedirs(output_dir, exist_ok=True)
    plt.savefig(Path(output_dir) / 'power.png', dpi=300, bbox_inches='tight')
    if show:
        plt.show()
    else:
        plt.close(fig)

    return fig


def run_power_analysis(n_replications, start=0, params=None, seed=None, output_dir=OUTPUT_DIR,
                       alpha=0.05, sampler_settings=None, display=True):
    """Run replications start .. start + n_replications - 1 and report power.

    Replication r uses seed + r, so a run can be resumed with --start and
    reproduces the same datasets.
    """
    for replication in range(start, start + n_replications):
        if display:
            print("\n" + "=" * 60)
            print(f"REPLICATION {replication + 1 - start} of {n_replications} (index {replication})")
            print("=" * 60)
        rep_seed = None if seed is None else seed + replication
        run_replication(replication, params=params, seed=rep_seed, output_dir=output_dir,
                        alpha=alpha, sampler_settings=sampler_settings, display=display)

    power = compute_power(output_dir, display=display)
    plot_power(power, output_dir)
    return power


def parse_args(argv=None):
    p = argparse.ArgumentParser(description=__doc__,
                                formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument("--replications", type=int, default=100)
    p.add_argument("--start", type=int, default=0, help="index of the first replication")
    p.add_argument("--subjects", type=int, default=None)
    p.add_argument("--items", type=int, default=None)
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--alpha", type=float, default=0.05)
    p.add_argument("--draws", type=int, default=None)
    p.add_argument("--tune", type=int, default=None)
    p.add_argument("--chains", type=int, default=None)
    p.add_argument("--cores", type=int, default=None)
    p.add_argument("--output-dir", default=str(OUTPUT_DIR))
    p.add_argument("--data", default=None, help="analyze an existing trial CSV instead of simulating")
    p.add_argument("--power-only", action="store_true",
                   help="recompute power from existing output files")
    p.add_argument("--quiet", action="store_true")
    return p.parse_args(argv)


def main(argv=None):
    """Main analysis pipeline"""
    args = parse_args(argv)
    display = not args.quiet

    params = {}
    if args.subjects is not None:
        params['n_subjects'] = args.subjects
    if args.items is not None:
        params['n_items'] = args.items

    sampler_settings = {key: getattr(args, key) for key in ['draws', 'tune', 'chains', 'cores']
                        if getattr(args, key) is not None}
    sampler_settings['progressbar'] = display

    if args.power_only:
        power = compute_power(args.output_dir, display=display)
        plot_power(power, args.output_dir)
        return power

    if args.data:
        # A trial file written by this script holds several replications
        trials = read_trials(args.data, display=display)
        tables = {}
        for replication, rep_trials in trials.groupby('replication', sort=True):
            rep_tables = {'trials': rep_trials}
            rep_tables.update(analyze_dataset(rep_trials, replication=replication, alpha=args.alpha,
                                              sampler_settings=sampler_settings,
                                              random_seed=args.seed, display=display))
            write_results(rep_tables, args.output_dir)
            for key, df in rep_tables.items():
                tables[key] = pd.concat([tables[key], df]) if key in tables else df
        if display:
            print(f"\n✅ Analysis complete! Results saved to {args.output_dir}/")
        return tables

    power = run_power_analysis(args.replications, start=args.start, params=params, seed=args.seed,
                               output_dir=args.output_dir, alpha=args.alpha,
                               sampler_settings=sampler_settings, display=display)
    if display:
        print(f"\n✅ Power analysis complete! Results saved to {args.output_dir}/")
    return power


if __name__ == "__main__":
    main()
