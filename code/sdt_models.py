"""
Bayesian probit regressions for yes/no SDT data

With effect-coded predictors (+/-0.5) the probit coefficients are SDT
quantities: the correctness slope is d-prime, minus the intercept is the
criterion, and the knowledge terms are the differences in those between
known and unknown items.

Two models are fitted to the same trials:
- a fixed-effects model (no pooling structure, all trials independent)
- a hierarchical model with correlated subject effects on every
  coefficient and correlated item effects on the intercept and
  correctness slope
"""

import numpy as np
import pandas as pd
import pymc as pm
import arviz as az

COEFS = ['Intercept', 'correct', 'known', 'correct:known']
ITEM_EFFECTS = ['Intercept', 'correct']

# Each hypothesis is a weighted sum of coefficients tested against zero
HYPOTHESES = {
    'sensitivity': {'correct': 1.0},
    'bias': {'Intercept': -1.0},
    'knowledge_sensitivity': {'correct:known': 1.0},
    'knowledge_bias': {'known': -1.0}
}

SAMPLER_SETTINGS = {
    'draws': 2000,
    'tune': 1000,
    'chains': 4,
    'cores': 4,
    'target_accept': 0.95
}

RHAT_THRESHOLD = 1.01
ESS_THRESHOLD = 400

# Posterior variables summarised in the coefficient tables, with the label
# format used for each coordinate
SUMMARY_VARS = {
    'beta': '{}',
    'sd_subject': 'sd(subject:{})',
    'sd_item': 'sd(item:{})'
}


def design_matrix(trials):
    """Return the (n_trials, 4) predictor matrix in COEFS order."""
    return np.column_stack([
        np.ones(len(trials)),
        trials['correct'].to_numpy(dtype=float),
        trials['known'].to_numpy(dtype=float),
        trials['correct_known'].to_numpy(dtype=float)
    ])


def build_fixed_model(trials, prior_sigma=1.0):
    """
    Probit regression with population-level effects only.

    Args:
        trials: Trial table with effect-coded predictors and a response column
        prior_sigma: SD of the normal prior on every coefficient

    Returns:
        PyMC model object
    """
    X = design_matrix(trials)
    y = trials['response'].to_numpy(dtype=int)

    with pm.Model(coords={'coef': COEFS}) as fixed_model:
        beta = pm.Normal('beta', mu=0.0, sigma=prior_sigma, dims='coef')
        eta = pm.math.dot(X, beta)
        pm.Bernoulli('response', p=pm.math.invprobit(eta), observed=y)

    return fixed_model


def build_mixed_model(trials, prior_sigma=1.0, eta_lkj=2.0, display=True):
    """
    Hierarchical probit regression with subject and item effects.

    Subject effects cover all four coefficients; item effects cover the
    intercept and the correctness slope only, since knowledge does not vary
    within an item. Both use a non-centred parameterisation with an
    LKJ prior on the correlations.

    Args:
        trials: Trial table with subject, item, effect-coded predictors and response
        prior_sigma: SD of the normal prior on the population-level coefficients
        eta_lkj: Shape of the LKJ correlation prior (1 = uniform)
        display: Whether to print the model dimensions

    Returns:
        PyMC model object
    """
    X = design_matrix(trials)
    y = trials['response'].to_numpy(dtype=int)
    correct = trials['correct'].to_numpy(dtype=float)

    # Subject ids restart in every replication
    subject_keys = trials['subject']
    if 'replication' in trials.columns and trials['replication'].nunique() > 1:
        subject_keys = trials['replication'].astype(str) + ':' + trials['subject'].astype(str)
    subject_idx, subjects = pd.factorize(subject_keys, sort=True)
    item_idx, items = pd.factorize(trials['item'], sort=True)

    coords = {
        'coef': COEFS,
        'item_effect': ITEM_EFFECTS,
        'subject': subjects,
        'item': items
    }

    if display:
        print(f"Modeling {len(subjects)} subjects and {len(items)} items "
              f"({len(trials)} trials)")

    with pm.Model(coords=coords) as mixed_model:
        # Population-level effects
        beta = pm.Normal('beta', mu=0.0, sigma=prior_sigma, dims='coef')

        # Subject effects on every coefficient
        chol_subject, _, sd_subject = pm.LKJCholeskyCov(
            'chol_subject', n=len(COEFS), eta=eta_lkj,
            sd_dist=pm.Exponential.dist(1.0, shape=len(COEFS)), compute_corr=True
        )
        pm.Deterministic('sd_subject', sd_subject, dims='coef')
        z_subject = pm.Normal('z_subject', mu=0.0, sigma=1.0, dims=('subject', 'coef'))
        u_subject = pm.Deterministic('u_subject', pm.math.dot(z_subject, chol_subject.T),
                                     dims=('subject', 'coef'))

        # Item effects on intercept and correctness slope
        chol_item, _, sd_item = pm.LKJCholeskyCov(
            'chol_item', n=len(ITEM_EFFECTS), eta=eta_lkj,
            sd_dist=pm.Exponential.dist(1.0, shape=len(ITEM_EFFECTS)), compute_corr=True
        )
        pm.Deterministic('sd_item', sd_item, dims='item_effect')
        z_item = pm.Normal('z_item', mu=0.0, sigma=1.0, dims=('item', 'item_effect'))
        u_item = pm.Deterministic('u_item', pm.math.dot(z_item, chol_item.T),
                                  dims=('item', 'item_effect'))

        eta = (pm.math.sum((beta + u_subject[subject_idx]) * X, axis=1)
               + u_item[item_idx, 0]
               + u_item[item_idx, 1] * correct)

        pm.Bernoulli('response', p=pm.math.invprobit(eta), observed=y)

    return mixed_model


def fit_model(model, sampler_settings=None, random_seed=None):
    """Sample from the posterior; sampling errors are not caught."""
    settings = {**SAMPLER_SETTINGS, **(sampler_settings or {})}
    with model:
        trace = pm.sample(random_seed=random_seed, **settings)
    return trace


def _summary_var_names(trace):
    return [var for var in SUMMARY_VARS if var in trace.posterior]


def check_convergence(trace, display=True):
    """Check MCMC convergence using R-hat, bulk ESS and divergences

    Returns:
        Dict with max_rhat, min_ess, n_divergent and an overall converged flag
    """
    var_names = _summary_var_names(trace)

    rhat = az.rhat(trace, var_names=var_names)
    ess = az.ess(trace, var_names=var_names, method='bulk')

    rhat_values = np.concatenate([rhat[var].values.flatten() for var in var_names])
    ess_values = np.concatenate([ess[var].values.flatten() for var in var_names])

    divergent = 0
    if 'sample_stats' in trace.groups() and 'diverging' in trace.sample_stats:
        divergent = int(trace.sample_stats['diverging'].sum().item())

    max_rhat = float(np.max(rhat_values))
    min_ess = float(np.min(ess_values))
    converged = bool(max_rhat < RHAT_THRESHOLD and min_ess > ESS_THRESHOLD and divergent == 0)

    if display:
        print("\n" + "=" * 50)
        print("CONVERGENCE DIAGNOSTICS")
        print("=" * 50)
        print(f"R-hat summary (should be < {RHAT_THRESHOLD}):")
        for var in var_names:
            values = rhat[var].values.flatten()
            flag = " ⚠️  WARNING: Poor convergence!" if np.max(values) >= RHAT_THRESHOLD else " ✅"
            print(f"  {var}: mean={np.mean(values):.3f}, max={np.max(values):.3f}{flag}")

        print(f"\nEffective Sample Size summary (should be > {ESS_THRESHOLD}):")
        for var in var_names:
            values = ess[var].values.flatten()
            flag = " ⚠️  WARNING: Low ESS!" if np.min(values) <= ESS_THRESHOLD else " ✅"
            print(f"  {var}: mean={np.mean(values):.0f}, min={np.min(values):.0f}{flag}")

        flag = " ⚠️  WARNING: Divergent transitions detected!" if divergent else " ✅"
        print(f"\nDivergent transitions: {divergent}{flag}")

    return {
        'max_rhat': max_rhat,
        'min_ess': min_ess,
        'n_divergent': divergent,
        'converged': converged
    }


def _interval(samples, ci):
    tail = (1 - ci) / 2 * 100
    return np.percentile(samples, tail), np.percentile(samples, 100 - tail)


def summarize_coefficients(trace, ci=0.95):
    """Create a coefficient table from the posterior samples.

    Population-level coefficients come first, followed by the random-effect
    SDs when the trace has them.
    """
    var_names = _summary_var_names(trace)
    rhat = az.rhat(trace, var_names=var_names)
    ess = az.ess(trace, var_names=var_names, method='bulk')

    rows = []
    for var in var_names:
        posterior = trace.posterior[var]
        dim = [d for d in posterior.dims if d not in ('chain', 'draw')][0]
        for label in posterior[dim].values:
            samples = posterior.sel({dim: label}).values.flatten()
            lower, upper = _interval(samples, ci)
            rows.append({
                'term': SUMMARY_VARS[var].format(label),
                'mean': np.mean(samples),
                'sd': np.std(samples),
                'ci_lower': lower,
                'ci_upper': upper,
                'r_hat': float(rhat[var].sel({dim: label})),
                'ess_bulk': float(ess[var].sel({dim: label}))
            })

    return pd.DataFrame(rows)


def evaluate_hypotheses(trace, alpha=0.05):
    """Test each entry of HYPOTHESES on the posterior.

    An effect counts as significant when the central (1 - alpha) credible
    interval of the weighted coefficient sum excludes zero.

    Returns:
        DataFrame with one row per hypothesis
    """
    beta = trace.posterior['beta']

    rows = []
    for hypothesis, weights in HYPOTHESES.items():
        samples = sum(weight * beta.sel(coef=coef).values.flatten()
                      for coef, weight in weights.items())
        lower, upper = _interval(samples, 1 - alpha)
        rows.append({
            'hypothesis': hypothesis,
            'estimate': np.mean(samples),
            'est_error': np.std(samples),
            'ci_lower': lower,
            'ci_upper': upper,
            'post_prob': np.mean(samples > 0),
            'significant': bool(lower > 0 or upper < 0)
        })

    return pd.DataFrame(rows)
