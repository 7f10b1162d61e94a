"""Tests de la simulation de croisements et de phénotypes."""

import numpy as np
import pytest

from qtlmap.config import MISSING, MALE, FEMALE
from qtlmap.errors import ConfigurationError
from qtlmap.genetic_map import GeneticMap
from qtlmap.hmm import calc_genoprob
from qtlmap.simulate import STATE_CODES, simulate_cross, simulate_phenotype


def _make_map(x=False):
    pos = {'1': {'m1': 0.0, 'm2': 20.0, 'm3': 40.0}}
    if x:
        pos['X'] = {'x1': 0.0, 'x2': 30.0}
    return GeneticMap(pos, x_chrs=['X'] if x else [])


class TestSimulateCross:
    def test_seed_is_reproducible(self):
        a, _ = simulate_cross(_make_map(), 'f2', n_ind=10, seed=1)
        b, _ = simulate_cross(_make_map(), 'f2', n_ind=10, seed=1)
        assert np.array_equal(a.genotypes('1'), b.genotypes('1'))

    def test_codes_match_truth_without_error(self):
        cross, truth = simulate_cross(_make_map(), 'f2', n_ind=20, seed=2)
        expected = truth['1'].apply(lambda col: col.map(STATE_CODES)).to_numpy()
        assert np.array_equal(cross.genotypes('1'), expected)

    def test_missing_prob(self):
        cross, _ = simulate_cross(_make_map(), 'bc', n_ind=200, missing_prob=0.5, seed=3)
        frac = np.mean(cross.genotypes('1') == MISSING)
        assert 0.4 < frac < 0.6

    def test_x_chromosome_sexes(self):
        sex = [MALE, FEMALE] * 5
        cross, truth = simulate_cross(_make_map(x=True), 'bc', n_ind=10, sex=sex, seed=4)
        males = truth['X'].iloc[0::2].to_numpy().ravel()
        females = truth['X'].iloc[1::2].to_numpy().ravel()
        assert set(males) <= {'AY', 'BY'}
        assert set(females) <= {'AA', 'AB'}
        assert list(cross.cross_info['sex']) == sex

    def test_x_not_supported(self):
        with pytest.raises(ConfigurationError):
            simulate_cross(_make_map(x=True), 'dh', n_ind=5)

    def test_sex_length_mismatch(self):
        with pytest.raises(ConfigurationError):
            simulate_cross(_make_map(), 'bc', n_ind=5, sex=[0, 1])


class TestSimulatePhenotype:
    def test_no_noise(self):
        _, truth = simulate_cross(_make_map(), 'bc', n_ind=10, seed=5)
        y = simulate_phenotype(truth, '1', 'm2', {'AA': 1.0, 'AB': 3.0}, noise_sd=0.0)
        expected = truth['1']['m2'].map({'AA': 1.0, 'AB': 3.0})
        assert np.allclose(y.values, expected.values)
        assert list(y.index) == list(truth['1'].index)

    def test_from_genoprobs(self):
        cross, _ = simulate_cross(_make_map(), 'bc', n_ind=10, seed=6)
        probs = calc_genoprob(cross, error_prob=0.0)
        y = simulate_phenotype(probs, '1', 'm1', {'AB': 2.0}, noise_sd=0.0)
        assert np.allclose(y.values, 2.0 * probs['1'][:, 1, 0])

    def test_unknown_position(self):
        _, truth = simulate_cross(_make_map(), 'bc', n_ind=5, seed=7)
        with pytest.raises(ConfigurationError):
            simulate_phenotype(truth, '1', 'absent', {'AA': 1.0})
