"""Tests du moteur HMM (forward-backward, Viterbi, probabilités de génotypes)."""

import numpy as np
import pandas as pd
import pytest

from qtlmap.config import AA, AB, MISSING, MALE, FEMALE
from qtlmap.dataset import CrossData
from qtlmap.errors import ConfigurationError
from qtlmap.genetic_map import GeneticMap
from qtlmap.hmm import ChromosomeHMM, GenoProbs, calc_genoprob, maxmarg, viterbi
from qtlmap.simulate import simulate_cross


def _make_map(n_markers=6, spacing=10.0, chroms=('1',), x_chrs=()):
    return GeneticMap({
        c: {f"c{c}m{i + 1}": i * spacing for i in range(n_markers)} for c in chroms
    }, x_chrs=x_chrs)


def _make_three_marker_bc():
    gmap = GeneticMap({'1': {'m1': 0.0, 'm2': 10.0, 'm3': 20.0}})
    geno = pd.DataFrame([[AA, AB, AA]], index=['i1'], columns=['m1', 'm2', 'm3'])
    return CrossData('bc', {'1': geno}, gmap)


def _make_x_male_conflict():
    # Mâle hémizygote observé hétérozygote : vraisemblance nulle sans erreur
    gmap = GeneticMap({'X': {'x1': 0.0, 'x2': 5.0, 'x3': 10.0}}, x_chrs=['X'])
    geno = pd.DataFrame([[AA, AB, AA], [AA, AA, MISSING]], index=['male', 'female'],
                        columns=['x1', 'x2', 'x3'])
    info = pd.DataFrame({'sex': [MALE, FEMALE]}, index=['male', 'female'])
    return CrossData('f2', {'X': geno}, gmap, info)


class TestChromosomeHMM:
    def test_three_marker_backcross_one_hot(self):
        hmm = ChromosomeHMM(_make_three_marker_bc(), '1', error_prob=0.0)
        pr = hmm.posterior('i1')
        assert np.allclose(pr, [[1, 0, 1], [0, 1, 0]])

    @pytest.mark.parametrize('cross_type', ['bc', 'f2', 'riself', 'risib', 'dh'])
    def test_posterior_sums_to_one(self, cross_type):
        cross, _ = simulate_cross(_make_map(), cross_type, n_ind=15, error_prob=0.02,
                                  missing_prob=0.3, seed=1)
        hmm = ChromosomeHMM(cross, '1', error_prob=0.01)
        for ind in cross.ids:
            pr = hmm.posterior(ind)
            assert np.all(pr >= 0)
            assert np.allclose(pr.sum(axis=0), 1.0)

    @pytest.mark.parametrize('cross_type', ['bc', 'f2', 'risib'])
    def test_forward_backward_likelihoods_agree(self, cross_type):
        cross, _ = simulate_cross(_make_map(), cross_type, n_ind=10, error_prob=0.05,
                                  missing_prob=0.2, seed=2)
        hmm = ChromosomeHMM(cross, '1', error_prob=0.05, map_function='kosambi')
        for ind in cross.ids:
            fwd, bwd = hmm.total_loglik(ind)
            assert fwd == pytest.approx(bwd, rel=1e-10)
            assert hmm.loglik(ind) == fwd

    def test_viterbi_matches_truth_without_error(self):
        cross, truth = simulate_cross(_make_map(), 'bc', n_ind=20, seed=3)
        hmm = ChromosomeHMM(cross, '1', error_prob=0.0)
        states = np.array(hmm.states, dtype=object)
        for ind in cross.ids:
            path = hmm.viterbi(ind)
            assert list(states[path]) == list(truth['1'].loc[ind])
            assert np.array_equal(path, np.argmax(hmm.posterior(ind), axis=0))

    def test_viterbi_tie_lowest_state(self):
        # Aucune observation : tous les chemins constants sont à égalité
        gmap = GeneticMap({'1': {'m1': 0.0, 'm2': 10.0}})
        geno = pd.DataFrame([[MISSING, MISSING]], index=['i1'], columns=['m1', 'm2'])
        hmm = ChromosomeHMM(CrossData('bc', {'1': geno}, gmap), '1')
        assert list(hmm.viterbi('i1')) == [0, 0]

    def test_forward_impossible_states(self):
        cross = _make_x_male_conflict()
        hmm = ChromosomeHMM(cross, 'X', error_prob=0.01)
        alpha = hmm.forward('male')
        assert np.all(np.isneginf(alpha[:3]))
        assert np.all(np.isfinite(alpha[3:]))

    def test_degenerate_position_floored(self):
        hmm = ChromosomeHMM(_make_x_male_conflict(), 'X', error_prob=0.0)
        assert hmm.degenerate_positions('male') == ['x2']
        assert hmm.degenerate_positions('female') == []
        pr = hmm.posterior('male')
        assert not np.any(np.isnan(pr))
        assert np.allclose(pr.sum(axis=0), 1.0)

    def test_pseudomarkers_have_no_observations(self):
        hmm = ChromosomeHMM(_make_three_marker_bc(), '1', error_prob=0.0, step=5.0)
        assert hmm.position_names == ['m1', 'c1.loc1', 'm2', 'c1.loc2', 'm3']
        pr = hmm.posterior('i1')
        assert np.allclose(pr[:, [0, 2, 4]], [[1, 0, 1], [0, 1, 0]])
        assert 0 < pr[0, 1] < 1

    def test_rec_fracs_override(self):
        cross = _make_three_marker_bc()
        hmm = ChromosomeHMM(cross, '1', rec_fracs=[0.3, 0.3])
        assert np.allclose(hmm.rec_fracs, [0.3, 0.3])
        with pytest.raises(ConfigurationError):
            ChromosomeHMM(cross, '1', rec_fracs=[0.3])
        with pytest.raises(ConfigurationError):
            ChromosomeHMM(cross, '1', rec_fracs=[0.3, 0.6])

    def test_expected_nrec_one_hot(self):
        hmm = ChromosomeHMM(_make_three_marker_bc(), '1', error_prob=0.0)
        expected, loglik = hmm.expected_nrec('i1')
        assert np.allclose(expected, [1.0, 1.0])
        assert np.isfinite(loglik)

    def test_invalid_error_prob(self):
        with pytest.raises(ConfigurationError):
            ChromosomeHMM(_make_three_marker_bc(), '1', error_prob=1.5)


class TestCalcGenoprob:
    def test_shapes_and_normalisation(self):
        gmap = _make_map(chroms=('1', '2'))
        cross, _ = simulate_cross(gmap, 'f2', n_ind=12, error_prob=0.01,
                                  missing_prob=0.2, seed=4)
        probs = calc_genoprob(cross, error_prob=0.01, step=2.5)
        assert probs.chromosomes == ['1', '2']
        assert list(probs.ids) == list(cross.ids)
        pr = probs['1']
        assert pr.shape == (12, 3, len(probs.position_names('1')))
        assert np.allclose(pr.sum(axis=1), 1.0)
        assert probs.issues == []

    def test_read_only(self):
        cross, _ = simulate_cross(_make_map(), 'bc', n_ind=5, seed=5)
        probs = calc_genoprob(cross)
        with pytest.raises(ValueError):
            probs['1'][0, 0, 0] = 0.5

    def test_matches_single_individual(self):
        cross, _ = simulate_cross(_make_map(), 'bc', n_ind=6, error_prob=0.02,
                                  missing_prob=0.3, seed=6)
        probs = calc_genoprob(cross, error_prob=0.02, chunk_size=4)
        hmm = ChromosomeHMM(cross, '1', error_prob=0.02)
        for row, ind in enumerate(cross.ids):
            assert np.allclose(probs['1'][row], hmm.posterior(ind))

    def test_parallel_same_as_serial(self):
        gmap = _make_map(chroms=('1', '2', '3'))
        cross, _ = simulate_cross(gmap, 'bc', n_ind=8, error_prob=0.01,
                                  missing_prob=0.2, seed=7)
        serial = calc_genoprob(cross, error_prob=0.01)
        threaded = calc_genoprob(cross, error_prob=0.01, cores=3, backend='thread',
                                 chunk_size=3)
        for chrom in serial.chromosomes:
            assert np.array_equal(serial[chrom], threaded[chrom])

    def test_degenerate_issue_reported(self):
        probs = calc_genoprob(_make_x_male_conflict(), error_prob=0.0)
        assert [(i.unit, i.kind) for i in probs.issues] == [(('X', 'male'), 'degenerate')]
        assert not np.any(np.isnan(probs['X']))

    def test_invalid_parameters(self):
        cross = _make_three_marker_bc()
        with pytest.raises(ConfigurationError):
            calc_genoprob(cross, error_prob=-0.1)
        with pytest.raises(ConfigurationError):
            calc_genoprob(cross, map_function='inconnue')
        with pytest.raises(ConfigurationError):
            calc_genoprob(cross, cores=0)

    def test_subset_and_frame(self):
        cross, _ = simulate_cross(_make_map(), 'bc', n_ind=5, seed=8)
        probs = calc_genoprob(cross)
        sub = probs.subset(['ind3', 'ind1'])
        assert np.array_equal(sub['1'][0], probs['1'][2])
        frame = probs.to_frame('1', 'AB')
        assert frame.shape == (5, 6)
        assert frame.loc['ind2'].iloc[0] == probs['1'][1, 1, 0]


class TestViterbiAndMaxmarg:
    def test_viterbi_paths(self):
        cross, truth = simulate_cross(_make_map(chroms=('1', '2')), 'f2', n_ind=10, seed=9)
        result = viterbi(cross, error_prob=0.0)
        assert result.issues == []
        for chrom in ('1', '2'):
            assert result.paths[chrom].equals(truth[chrom])

    def test_viterbi_degenerate_issue_reported(self):
        result = viterbi(_make_x_male_conflict(), error_prob=0.0)
        assert [(i.unit, i.kind) for i in result.issues] == [(('X', 'male'), 'degenerate')]
        assert result.paths['X'].notna().all().all()

    def test_viterbi_blocks_match_single_individual(self):
        cross, _ = simulate_cross(_make_map(), 'f2', n_ind=7, error_prob=0.02,
                                  missing_prob=0.3, seed=10)
        result = viterbi(cross, error_prob=0.02, chunk_size=3)
        hmm = ChromosomeHMM(cross, '1', error_prob=0.02)
        states = np.array(hmm.states, dtype=object)
        for ind in cross.ids:
            assert list(result.paths['1'].loc[ind]) == list(states[hmm.viterbi(ind)])

    def test_maxmarg_threshold(self):
        probs = GenoProbs(
            {'1': np.array([[[0.99, 0.6], [0.01, 0.4]]])}, ['i1'],
            {'1': ['AA', 'AB']}, {'1': pd.Series([0.0, 10.0], index=['m1', 'm2'])},
        )
        out = maxmarg(probs, minprob=0.95)['1']
        assert out.loc['i1', 'm1'] == 'AA'
        assert out.loc['i1', 'm2'] is None

    def test_maxmarg_invalid(self):
        probs = GenoProbs(
            {'1': np.array([[[1.0], [0.0]]])}, ['i1'],
            {'1': ['AA', 'AB']}, {'1': pd.Series([0.0], index=['m1'])},
        )
        with pytest.raises(ConfigurationError):
            maxmarg(probs, minprob=2.0)
