"""
Simulation de croisements et de phénotypes (données de test et de
validation des estimateurs).
"""

import numpy as np
import pandas as pd

from .config import (
    MISSING, AA, AB, BB, FEMALE, FORWARD, DEFAULT_MAP_FUNCTION, check_error_prob,
)
from .cross import get_cross_model
from .dataset import CrossData
from .errors import ConfigurationError
from .hmm import GenoProbs

# Code observé d'un état vrai
STATE_CODES = {'AA': AA, 'AB': AB, 'BB': BB, 'AY': AA, 'BY': BB}


def _per_individual(values, n_ind, default, name):
    if values is None:
        return np.full(n_ind, default, dtype=int)
    try:
        return np.broadcast_to(np.asarray(values, dtype=int), (n_ind,)).copy()
    except ValueError:
        raise ConfigurationError(f"{name}: nombre de valeurs différent de {n_ind}") from None


def _simulate_chain(rng, init, trans):
    n_pos = trans.shape[0] + 1
    path = np.empty(n_pos, dtype=int)
    path[0] = rng.choice(len(init), p=init)
    for j in range(1, n_pos):
        row = trans[j - 1, path[j - 1]]
        path[j] = rng.choice(len(row), p=row / row.sum())
    return path


def simulate_cross(genetic_map, cross_type='bc', n_ind=100, error_prob=0.0,
                   missing_prob=0.0, seed=None, sex=None, direction=None,
                   map_function=DEFAULT_MAP_FUNCTION):
    """
    Simule les génotypes d'un croisement le long d'une carte.

    Parameters
    ----------
    genetic_map : GeneticMap
    cross_type : str
    n_ind : int
    error_prob : float
        Probabilité qu'un génotype observé soit remplacé par un autre état
        possible
    missing_prob : float
        Probabilité qu'un génotype soit manquant
    sex, direction : scalaire ou séquence, optional
    seed : int, optional

    Returns
    -------
    cross : CrossData
    true_genotypes : dict {chromosome: DataFrame (individus × marqueurs) des
        noms d'états}
    """
    model = get_cross_model(cross_type)
    check_error_prob(error_prob)
    check_error_prob(missing_prob, 'missing_prob')
    if n_ind < 1:
        raise ConfigurationError(f"n_ind doit être >= 1, reçu {n_ind}")
    rng = np.random.default_rng(seed)
    ids = [f"ind{i + 1}" for i in range(n_ind)]
    sex = _per_individual(sex, n_ind, FEMALE, 'sex')
    direction = _per_individual(direction, n_ind, FORWARD, 'direction')

    genotypes, truth = {}, {}
    for chrom in genetic_map.chromosomes:
        is_x = genetic_map.is_x(chrom)
        if is_x and not model.supports_x:
            raise ConfigurationError(
                f"Le croisement {model.name} ne gère pas de chromosome X ({chrom})"
            )
        names = model.states(is_x)
        rf = genetic_map.rec_fracs(chrom, map_function)
        n_markers = len(rf) + 1
        true = np.empty((n_ind, n_markers), dtype=int)
        obs = np.empty((n_ind, n_markers), dtype=int)
        for i in range(n_ind):
            init = model.init(is_x, sex[i], direction[i])
            trans = model.transition(rf, is_x, sex[i], direction[i])
            true[i] = _simulate_chain(rng, init, trans)
            possible = model.possible_states(is_x, sex[i], direction[i])
            codes = np.array([STATE_CODES[names[s]] for s in true[i]])
            errors = rng.random(n_markers) < error_prob
            for j in np.where(errors)[0]:
                others = [s for s in possible if s != true[i, j]]
                codes[j] = STATE_CODES[names[rng.choice(others)]]
            codes[rng.random(n_markers) < missing_prob] = MISSING
            obs[i] = codes
        markers = genetic_map.markers(chrom)
        genotypes[chrom] = pd.DataFrame(obs, index=ids, columns=markers)
        truth[chrom] = pd.DataFrame(np.asarray(names, dtype=object)[true],
                                    index=ids, columns=markers)

    info = pd.DataFrame({'sex': sex, 'direction': direction}, index=ids)
    return CrossData(model, genotypes, genetic_map, info), truth


def simulate_phenotype(genotypes, chrom, position, effects, noise_sd=1.0,
                       seed=None, name='pheno'):
    """
    Phénotype = effet du génotype à une position + bruit gaussien.

    Parameters
    ----------
    genotypes : dict {chromosome: DataFrame des noms d'états} ou GenoProbs
        Avec des probabilités, l'effet est l'espérance sur les états.
    chrom : str
    position : str
        Marqueur ou pseudomarqueur
    effects : dict {état: effet}
    noise_sd : float

    Returns
    -------
    Series indexée par individu
    """
    if noise_sd < 0:
        raise ConfigurationError(f"noise_sd doit être >= 0, reçu {noise_sd}")
    rng = np.random.default_rng(seed)
    chrom = str(chrom)
    if isinstance(genotypes, GenoProbs):
        names = genotypes.position_names(chrom)
        if position not in names:
            raise ConfigurationError(f"Position {position} absente du chromosome {chrom}")
        pr = genotypes[chrom][:, :, names.index(position)]
        eff = np.array([effects.get(s, 0.0) for s in genotypes.states[chrom]])
        signal = pr @ eff
        ids = genotypes.ids
    else:
        geno = genotypes[chrom]
        if position not in geno.columns:
            raise ConfigurationError(f"Position {position} absente du chromosome {chrom}")
        signal = geno[position].map(lambda s: effects.get(s, 0.0)).to_numpy(dtype=float)
        ids = geno.index
    y = signal + rng.normal(0.0, noise_sd, size=len(signal))
    return pd.Series(y, index=ids, name=name)
