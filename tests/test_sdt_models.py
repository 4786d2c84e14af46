"""Tests for the Bayesian probit models and posterior summaries."""

import arviz as az
import numpy as np
import pandas as pd
import pytest

from sdt_sim import simulate_trials
from sdt_models import (COEFS, HYPOTHESES, design_matrix, build_fixed_model, build_mixed_model,
                        fit_model, check_convergence, summarize_coefficients, evaluate_hypotheses)

QUICK_SAMPLER = {'draws': 200, 'tune': 200, 'chains': 2, 'cores': 1, 'progressbar': False}


@pytest.fixture(scope='module')
def trials():
    return simulate_trials({'n_subjects': 8, 'n_items': 12}, seed=3)


def test_design_matrix_columns(trials):
    X = design_matrix(trials)

    assert X.shape == (len(trials), len(COEFS))
    assert (X[:, 0] == 1).all()
    assert np.allclose(X[:, 1], trials['correct'])
    assert np.allclose(X[:, 3], X[:, 1] * X[:, 2])


def test_fixed_model_structure(trials):
    model = build_fixed_model(trials)

    assert 'beta' in model.named_vars
    assert [rv.name for rv in model.observed_RVs] == ['response']
    assert list(model.coords['coef']) == COEFS


def test_mixed_model_structure(trials):
    model = build_mixed_model(trials, display=False)

    for name in ['beta', 'sd_subject', 'sd_item', 'u_subject', 'u_item']:
        assert name in model.named_vars
    assert len(model.coords['subject']) == 8
    assert len(model.coords['item']) == 12


def test_hypotheses_from_posterior(trace_factory):
    trace = trace_factory([0.0, 1.5, 0.0, 0.6])
    results = evaluate_hypotheses(trace).set_index('hypothesis')

    assert list(results.index) == list(HYPOTHESES)
    assert results.loc['sensitivity', 'estimate'] == pytest.approx(1.5, abs=0.02)
    assert results.loc['sensitivity', 'significant']
    assert results.loc['sensitivity', 'post_prob'] == 1.0
    assert results.loc['knowledge_sensitivity', 'significant']
    assert not results.loc['bias', 'significant']
    assert not results.loc['knowledge_bias', 'significant']


def test_hypotheses_flip_sign_for_criterion(trace_factory):
    # Criterion is minus the intercept; the knowledge effect on it is minus b_known
    trace = trace_factory([0.5, 1.0, -0.4, 0.0])
    results = evaluate_hypotheses(trace).set_index('hypothesis')

    assert results.loc['bias', 'estimate'] == pytest.approx(-0.5, abs=0.02)
    assert results.loc['bias', 'post_prob'] == pytest.approx(0.0)
    assert results.loc['knowledge_bias', 'estimate'] == pytest.approx(0.4, abs=0.02)
    assert results.loc['knowledge_bias', 'ci_lower'] > 0


def test_credible_interval_width_follows_alpha(trace_factory):
    trace = trace_factory([0.0, 1.0, 0.0, 0.0], beta_sd=0.5)
    wide = evaluate_hypotheses(trace, alpha=0.01).set_index('hypothesis')
    narrow = evaluate_hypotheses(trace, alpha=0.2).set_index('hypothesis')

    width = lambda df: df.loc['sensitivity', 'ci_upper'] - df.loc['sensitivity', 'ci_lower']
    assert width(wide) > width(narrow)


def test_summarize_coefficients(trace_factory):
    trace = trace_factory([0.0, 1.5, 0.0, 0.6], random_effects=True)
    summary = summarize_coefficients(trace)

    assert list(summary['term'][:4]) == COEFS
    assert 'sd(subject:correct:known)' in set(summary['term'])
    assert 'sd(item:correct)' in set(summary['term'])
    assert len(summary) == 4 + 4 + 2
    assert (summary['ci_lower'] < summary['mean']).all()
    assert (summary['mean'] < summary['ci_upper']).all()
    assert summary.set_index('term').loc['correct', 'mean'] == pytest.approx(1.5, abs=0.02)


def test_check_convergence_on_well_mixed_chains(trace_factory):
    diagnostics = check_convergence(trace_factory([0.0, 1.0, 0.0, 0.0]), display=False)

    assert diagnostics['converged']
    assert diagnostics['max_rhat'] < 1.01
    assert diagnostics['min_ess'] > 400
    assert diagnostics['n_divergent'] == 0


def test_check_convergence_flags_disagreeing_chains(capsys):
    rng = np.random.default_rng(0)
    beta = rng.normal(0.0, 0.1, size=(2, 500, len(COEFS)))
    beta[1] += 5.0
    trace = az.from_dict(posterior={'beta': beta}, coords={'coef': COEFS}, dims={'beta': ['coef']})

    diagnostics = check_convergence(trace, display=True)

    assert not diagnostics['converged']
    assert diagnostics['max_rhat'] > 1.01
    assert "Poor convergence" in capsys.readouterr().out


@pytest.mark.slow
def test_fixed_model_fit(trials):
    trace = fit_model(build_fixed_model(trials), sampler_settings=QUICK_SAMPLER, random_seed=1)

    summary = summarize_coefficients(trace)
    assert list(summary['term']) == COEFS
    assert summary.set_index('term').loc['correct', 'mean'] > 0

    diagnostics = check_convergence(trace, display=False)
    assert set(diagnostics) == {'max_rhat', 'min_ess', 'n_divergent', 'converged'}


@pytest.mark.slow
def test_mixed_model_fit(trials):
    model = build_mixed_model(trials, display=False)
    trace = fit_model(model, sampler_settings=QUICK_SAMPLER, random_seed=2)

    assert trace.posterior['u_subject'].shape[-2:] == (8, len(COEFS))
    summary = summarize_coefficients(trace)
    assert len(summary) == 4 + 4 + 2
    assert len(evaluate_hypotheses(trace)) == len(HYPOTHESES)


def test_mixed_model_separates_subjects_across_replications():
    trials = pd.concat([simulate_trials({'n_subjects': 4, 'n_items': 6}, seed=1, replication=0),
                        simulate_trials({'n_subjects': 4, 'n_items': 6}, seed=2, replication=1)])

    model = build_mixed_model(trials, display=False)

    assert len(model.coords['subject']) == 8
    assert len(model.coords['item']) == 6
