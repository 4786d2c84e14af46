"""
Shared test configuration and path setup.

The analysis modules live in code/ as plain scripts. This conftest.py adds
code/ to sys.path once so tests can import them directly, and selects the
non-interactive matplotlib backend.
"""

import os
import sys

import matplotlib

matplotlib.use("Agg")

_CODE_DIR = os.path.join(os.path.dirname(__file__), "..", "code")
if _CODE_DIR not in sys.path:
    sys.path.insert(0, os.path.abspath(_CODE_DIR))

import arviz as az  # noqa: E402
import numpy as np  # noqa: E402
import pytest  # noqa: E402

from sdt_models import COEFS, ITEM_EFFECTS  # noqa: E402


def make_trace(beta_means, beta_sd=0.1, chains=2, draws=1000, seed=0, random_effects=False):
    """Synthetic InferenceData with iid normal posterior draws for beta."""
    rng = np.random.default_rng(seed)
    posterior = {'beta': rng.normal(beta_means, beta_sd, size=(chains, draws, len(COEFS)))}
    dims = {'beta': ['coef']}
    coords = {'coef': COEFS}
    if random_effects:
        posterior['sd_subject'] = np.abs(rng.normal(0.3, 0.05, size=(chains, draws, len(COEFS))))
        posterior['sd_item'] = np.abs(rng.normal(0.2, 0.05, size=(chains, draws, len(ITEM_EFFECTS))))
        dims['sd_subject'] = ['coef']
        dims['sd_item'] = ['item_effect']
        coords['item_effect'] = ITEM_EFFECTS
    return az.from_dict(posterior=posterior, coords=coords, dims=dims)


@pytest.fixture
def trace_factory():
    return make_trace
