"""
Signal Detection Theory (SDT) data simulation and point estimates

This module:
1. Simulates trial-level yes/no responses for a 2x2 within-subject design
   (statement correctness x item knowledge) with correlated subject and item
   random effects
2. Classifies each trial as hit, miss, false alarm or correct rejection
3. Computes per-subject d-prime and criterion for known and unknown items
4. Tests the population-level effects with classical t-tests
"""

import numpy as np
import pandas as pd
from scipy import stats

# Mapping dictionaries for categorical variables
# These convert categorical labels to effect codes for analysis
MAPPINGS = {
    'knowledge': {'unknown': -0.5, 'known': 0.5},
    'correctness': {'incorrect': -0.5, 'correct': 0.5}
}

# Outcome categories in the order they are reported
OUTCOMES = ['hit', 'miss', 'false_alarm', 'correct_rejection']

# Default generative parameters
# Fixed effects are on the linear-predictor scale; the random effect SDs
# follow the order of the fixed effects (subject) and Intercept/correct (item)
DEFAULT_PARAMS = {
    'n_subjects': 30,
    'n_items': 40,
    'fixed_effects': {
        'Intercept': 0.0,
        'correct': 1.0,
        'known': -0.2,
        'correct:known': 0.4
    },
    'subject_sd': [0.5, 0.3, 0.2, 0.2],
    'subject_corr': 0.2,
    'item_sd': [0.4, 0.3],
    'item_corr': 0.2,
    'link': 'logit'
}

LINKS = {
    'logit': lambda eta: 1.0 / (1.0 + np.exp(-eta)),
    'probit': stats.norm.cdf
}


def make_covariance(sds, corr):
    """Build a covariance matrix from standard deviations and correlations.

    Args:
        sds: Sequence of standard deviations
        corr: Scalar correlation shared by every pair, or a full correlation matrix

    Returns:
        Covariance matrix as a 2-D numpy array
    """
    sds = np.asarray(sds, dtype=float)
    if np.any(sds < 0):
        raise ValueError(f"Standard deviations must be non-negative, got {sds}")

    k = len(sds)
    if np.ndim(corr) == 0:
        corr_matrix = np.full((k, k), float(corr))
        np.fill_diagonal(corr_matrix, 1.0)
    else:
        corr_matrix = np.asarray(corr, dtype=float)
        if corr_matrix.shape != (k, k):
            raise ValueError(f"Correlation matrix must be {k}x{k}, got {corr_matrix.shape}")
        if not np.allclose(corr_matrix, corr_matrix.T):
            raise ValueError("Correlation matrix must be symmetric")

    if np.any(np.abs(corr_matrix) > 1):
        raise ValueError("Correlations must lie between -1 and 1")

    cov = np.outer(sds, sds) * corr_matrix

    # Allow for round-off on singular (e.g. zero SD) matrices
    if np.min(np.linalg.eigvalsh(cov)) < -1e-10:
        raise ValueError("Covariance matrix is not positive semi-definite")

    return cov


def simulate_items(n_items, item_sd, item_corr, rng):
    """Draw the item table with a random intercept and correctness slope per item.

    Knowledge alternates between items so that half are known and half unknown.
    """
    if n_items < 2 or n_items % 2:
        raise ValueError(f"n_items must be an even number >= 2, got {n_items}")

    cov = make_covariance(item_sd, item_corr)
    effects = rng.multivariate_normal(np.zeros(2), cov, size=n_items)

    return pd.DataFrame({
        'item': np.arange(1, n_items + 1),
        'knowledge': np.where(np.arange(n_items) % 2 == 0, 'known', 'unknown'),
        'item_intercept': effects[:, 0],
        'item_slope': effects[:, 1]
    })


def simulate_subjects(n_subjects, subject_sd, subject_corr, rng):
    """Draw the subject table with four correlated random effects."""
    if n_subjects < 1:
        raise ValueError(f"n_subjects must be >= 1, got {n_subjects}")

    cov = make_covariance(subject_sd, subject_corr)
    if cov.shape != (4, 4):
        raise ValueError("subject_sd must hold four SDs (Intercept, correct, known, correct:known)")
    effects = rng.multivariate_normal(np.zeros(4), cov, size=n_subjects)

    return pd.DataFrame({
        'subject': np.arange(1, n_subjects + 1),
        'subject_intercept': effects[:, 0],
        'subject_correct': effects[:, 1],
        'subject_known': effects[:, 2],
        'subject_correct_known': effects[:, 3]
    })


def classify_outcomes(trials):
    """Add outcome category and accuracy columns to a trial table.

    A "yes" to a correct statement is a hit, a "no" a miss; a "yes" to an
    incorrect statement is a false alarm, a "no" a correct rejection.
    """
    trials = trials.copy()
    signal = trials['correctness'] == 'correct'
    yes = trials['response'] == 1

    trials['outcome'] = np.select(
        [signal & yes, signal & ~yes, ~signal & yes],
        ['hit', 'miss', 'false_alarm'],
        default='correct_rejection'
    )
    trials['accuracy'] = (signal == yes).astype(int)
    return trials


def simulate_trials(params=None, seed=None, replication=0, display=False):
    """Simulate one dataset from the SDT generative model.

    Every subject sees every item once as a correct and once as an incorrect
    statement, so each subject contributes n_items * 2 trials.

    Args:
        params: Dict of overrides for DEFAULT_PARAMS
        seed: Seed for the random number generator
        replication: Replication index stored with every trial
        display: Whether to print a summary of the simulated data

    Returns:
        DataFrame with one row per trial
    """
    params = {**DEFAULT_PARAMS, **(params or {})}
    unknown = set(params) - set(DEFAULT_PARAMS)
    if unknown:
        raise ValueError(f"Unknown simulation parameters: {sorted(unknown)}")
    if params['link'] not in LINKS:
        raise ValueError(f"Unknown link '{params['link']}', expected one of {list(LINKS)}")

    fixed = {**DEFAULT_PARAMS['fixed_effects'], **params['fixed_effects']}
    if set(fixed) != set(DEFAULT_PARAMS['fixed_effects']):
        raise ValueError(f"Unknown fixed effects: {sorted(set(fixed) - set(DEFAULT_PARAMS['fixed_effects']))}")
    rng = np.random.default_rng(seed)

    items = simulate_items(params['n_items'], params['item_sd'], params['item_corr'], rng)
    subjects = simulate_subjects(params['n_subjects'], params['subject_sd'],
                                 params['subject_corr'], rng)

    # Fully crossed design: subject x item x correctness
    correctness = pd.DataFrame({'correctness': ['correct', 'incorrect']})
    trials = subjects.merge(items, how='cross').merge(correctness, how='cross')

    trials['known'] = trials['knowledge'].map(MAPPINGS['knowledge'])
    trials['correct'] = trials['correctness'].map(MAPPINGS['correctness'])
    trials['correct_known'] = trials['correct'] * trials['known']

    # Linear predictor: fixed effects plus subject and item deviations
    trials['eta'] = (
        fixed['Intercept'] + trials['subject_intercept'] + trials['item_intercept']
        + (fixed['correct'] + trials['subject_correct'] + trials['item_slope']) * trials['correct']
        + (fixed['known'] + trials['subject_known']) * trials['known']
        + (fixed['correct:known'] + trials['subject_correct_known']) * trials['correct_known']
    )
    trials['p_yes'] = LINKS[params['link']](trials['eta'].to_numpy())
    trials['response'] = rng.binomial(1, trials['p_yes'].to_numpy())

    trials = classify_outcomes(trials)
    trials.insert(0, 'replication', replication)

    columns = ['replication', 'subject', 'item', 'knowledge', 'correctness',
               'known', 'correct', 'correct_known', 'eta', 'p_yes',
               'response', 'outcome', 'accuracy']
    trials = trials[columns].sort_values(['subject', 'item', 'correctness']).reset_index(drop=True)

    if display:
        print(f"\nSimulated {len(trials)} trials "
              f"({params['n_subjects']} subjects x {params['n_items']} items x 2 statements)")
        print(trials.head())
        print("\nOutcome counts:")
        print(trials.groupby('knowledge')['outcome'].value_counts().unstack(fill_value=0))

    return trials


def read_trials(file_path, display=False):
    """Read trial data from a CSV file and derive the analysis columns.

    Args:
        file_path: Path to a CSV with at least subject, item, knowledge,
            correctness and response columns
        display: Whether to print a sample of the data

    Returns:
        DataFrame in the same layout as simulate_trials
    """
    data = pd.read_csv(file_path)

    required = ['subject', 'item', 'knowledge', 'correctness', 'response']
    missing = [col for col in required if col not in data.columns]
    if missing:
        raise ValueError(f"{file_path} is missing required columns: {missing}")

    # Convert categorical labels to effect codes
    data['known'] = data['knowledge'].map(MAPPINGS['knowledge'])
    data['correct'] = data['correctness'].map(MAPPINGS['correctness'])
    for col in ['known', 'correct']:
        if data[col].isna().any():
            source = 'knowledge' if col == 'known' else 'correctness'
            raise ValueError(f"Unexpected {source} labels: "
                             f"{sorted(set(data[source]) - set(MAPPINGS[source]))}")
    missing = set(MAPPINGS['knowledge']) - set(data['knowledge'])
    if missing:
        raise ValueError(f"{file_path} has no trials for knowledge condition(s) {sorted(missing)}")
    data['correct_known'] = data['correct'] * data['known']
    data['response'] = data['response'].astype(int)

    if 'replication' not in data.columns:
        data.insert(0, 'replication', 0)

    data = classify_outcomes(data)

    if display:
        print("\nRaw data sample:")
        print(data.head())
        print("\nSubjects:", data['subject'].nunique(), "Items:", data['item'].nunique())

    return data


def compute_rates(hits, misses, false_alarms, correct_rejections, correction='loglinear'):
    """Hit and false-alarm rates, optionally with the log-linear correction.

    The log-linear correction adds 0.5 to each count (and 1 to each total)
    so that perfect rates stay finite after the z-transform.
    """
    hits, misses, false_alarms, correct_rejections = (
        np.asarray(x, dtype=float) for x in (hits, misses, false_alarms, correct_rejections)
    )
    if correction == 'loglinear':
        hit_rate = (hits + 0.5) / (hits + misses + 1)
        fa_rate = (false_alarms + 0.5) / (false_alarms + correct_rejections + 1)
    elif correction == 'none':
        hit_rate = hits / (hits + misses)
        fa_rate = false_alarms / (false_alarms + correct_rejections)
    else:
        raise ValueError(f"Unknown rate correction '{correction}'")
    return hit_rate, fa_rate


def compute_sdt_point_estimates(trials, correction='loglinear'):
    """Compute d-prime and criterion per subject and knowledge condition.

    Args:
        trials: Trial table with subject, knowledge and outcome columns
        correction: 'loglinear' or 'none'

    Returns:
        DataFrame with one row per subject x knowledge condition
    """
    counts = (trials.groupby(['replication', 'subject', 'knowledge'])['outcome']
              .value_counts()
              .unstack(fill_value=0)
              .reindex(columns=OUTCOMES, fill_value=0)
              .reset_index())
    counts.columns.name = None
    counts = counts.rename(columns={
        'hit': 'hits',
        'miss': 'misses',
        'false_alarm': 'false_alarms',
        'correct_rejection': 'correct_rejections'
    })

    counts['n_signal'] = counts['hits'] + counts['misses']
    counts['n_noise'] = counts['false_alarms'] + counts['correct_rejections']

    hit_rate, fa_rate = compute_rates(counts['hits'], counts['misses'],
                                      counts['false_alarms'], counts['correct_rejections'],
                                      correction=correction)
    with np.errstate(divide='ignore', invalid='ignore'):
        counts['hit_rate'] = hit_rate
        counts['fa_rate'] = fa_rate
        counts['z_hit'] = stats.norm.ppf(hit_rate)
        counts['z_fa'] = stats.norm.ppf(fa_rate)
        counts['dprime'] = counts['z_hit'] - counts['z_fa']
        counts['criterion'] = -(counts['z_hit'] + counts['z_fa']) / 2

    return counts


def _t_test_row(hypothesis, values, alpha):
    """One-sample t-test of values against zero."""
    values = np.asarray(values, dtype=float)
    values = values[np.isfinite(values)]
    n = len(values)
    if n < 2:
        t, p = np.nan, np.nan
    else:
        t, p = stats.ttest_1samp(values, 0.0)
    return {
        'hypothesis': hypothesis,
        'estimate': np.mean(values) if n else np.nan,
        'sd': np.std(values, ddof=1) if n > 1 else np.nan,
        't': t,
        'df': n - 1,
        'p_value': p,
        'significant': bool(p < alpha) if np.isfinite(p) else False
    }


def summarize_point_estimates(sdt, alpha=0.05):
    """Population-level tests on the per-subject point estimates.

    Overall sensitivity and bias are tested against zero; knowledge effects
    are paired differences (known - unknown), which is the same as a
    one-sample test on the per-subject differences.

    Args:
        sdt: Output of compute_sdt_point_estimates
        alpha: Significance level

    Returns:
        DataFrame with one row per hypothesis
    """
    missing = set(MAPPINGS['knowledge']) - set(sdt['knowledge'])
    if missing:
        raise ValueError(f"Knowledge effects need both conditions; no trials for {sorted(missing)}")

    # Subjects are only unique within a replication
    index = [col for col in ('replication', 'subject') if col in sdt.columns]
    wide = sdt.pivot_table(index=index, columns='knowledge',
                           values=['dprime', 'criterion'])

    rows = [
        _t_test_row('sensitivity', wide['dprime'].mean(axis=1, skipna=False), alpha),
        _t_test_row('bias', wide['criterion'].mean(axis=1, skipna=False), alpha),
        _t_test_row('knowledge_sensitivity',
                    wide[('dprime', 'known')] - wide[('dprime', 'unknown')], alpha),
        _t_test_row('knowledge_bias',
                    wide[('criterion', 'known')] - wide[('criterion', 'unknown')], alpha)
    ]
    return pd.DataFrame(rows)
