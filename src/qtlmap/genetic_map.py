"""
Carte génétique : positions ordonnées des marqueurs par chromosome,
fonctions de cartographie (cM <-> fraction de recombinaison) et
grille de pseudomarqueurs.
"""

import numpy as np
import pandas as pd
from scipy.optimize import brentq

from .config import check_step
from .errors import ConfigurationError


# ============================================================
# Fonctions de cartographie
# mf : distance (cM) -> fraction de recombinaison
# imf : fraction de recombinaison -> distance (cM)
# ============================================================

def _haldane_mf(d):
    return 0.5 * (1.0 - np.exp(-np.asarray(d, dtype=float) / 50.0))


def _haldane_imf(r):
    return -50.0 * np.log1p(-2.0 * np.asarray(r, dtype=float))


def _kosambi_mf(d):
    return 0.5 * np.tanh(np.asarray(d, dtype=float) / 50.0)


def _kosambi_imf(r):
    r = np.asarray(r, dtype=float)
    return 25.0 * np.log((1.0 + 2.0 * r) / (1.0 - 2.0 * r))


def _cf_imf(r):
    r = np.asarray(r, dtype=float)
    return 12.5 * (np.log((1.0 + 2.0 * r) / (1.0 - 2.0 * r)) + 2.0 * np.arctan(2.0 * r))


def _cf_mf(d):
    """Carter-Falconer : pas de forme fermée, inversion numérique."""
    d = np.asarray(d, dtype=float)
    out = np.zeros(d.shape)
    flat_d = d.ravel()
    flat_out = out.ravel()
    upper = 0.5 - 1e-15
    d_max = float(_cf_imf(upper))
    for i, di in enumerate(flat_d):
        if di <= 0:
            flat_out[i] = 0.0
        elif di >= d_max:
            flat_out[i] = upper
        else:
            flat_out[i] = brentq(lambda r: float(_cf_imf(r)) - di, 0.0, upper, xtol=1e-14)
    return flat_out.reshape(d.shape)


def _morgan_mf(d):
    return np.minimum(np.asarray(d, dtype=float) / 100.0, 0.5)


def _morgan_imf(r):
    return 100.0 * np.asarray(r, dtype=float)


MAP_FUNCTIONS = {
    'haldane': (_haldane_mf, _haldane_imf),
    'kosambi': (_kosambi_mf, _kosambi_imf),
    'c-f': (_cf_mf, _cf_imf),
    'carter-falconer': (_cf_mf, _cf_imf),
    'morgan': (_morgan_mf, _morgan_imf),
}


def get_map_function(name):
    """Retourne le couple (mf, imf) pour une fonction de cartographie."""
    try:
        return MAP_FUNCTIONS[name]
    except KeyError:
        raise ConfigurationError(
            f"Fonction de cartographie inconnue: {name!r} "
            f"(choix: {', '.join(MAP_FUNCTIONS)})"
        ) from None


def dist_to_rf(d, map_function='haldane'):
    mf, _ = get_map_function(map_function)
    return mf(d)


def rf_to_dist(r, map_function='haldane'):
    _, imf = get_map_function(map_function)
    return imf(r)


# ============================================================
# Carte génétique
# ============================================================

class GeneticMap:
    """
    Carte génétique immuable.

    Parameters
    ----------
    positions : dict
        Clé = chromosome, valeur = pandas.Series (index = noms des marqueurs,
        valeurs = positions en cM) ou dict {marqueur: cM}
    x_chrs : iterable
        Chromosomes à traiter comme X
    """

    def __init__(self, positions, x_chrs=()):
        self._pos = {}
        for chrom, pos in positions.items():
            chrom = str(chrom)
            s = pd.Series(pos, dtype=float).copy()
            s.index = s.index.astype(str)
            self._check_chromosome(chrom, s)
            self._pos[chrom] = s
        self.x_chrs = frozenset(str(c) for c in x_chrs)
        unknown = self.x_chrs - set(self._pos)
        if unknown:
            raise ConfigurationError(f"Chromosomes X absents de la carte: {sorted(unknown)}")

    @staticmethod
    def _check_chromosome(chrom, s):
        if len(s) == 0:
            raise ConfigurationError(f"Chromosome {chrom} sans marqueur")
        if not np.all(np.isfinite(s.values)):
            raise ConfigurationError(f"Positions non finies sur le chromosome {chrom}")
        if s.index.has_duplicates:
            dup = s.index[s.index.duplicated()].tolist()
            raise ConfigurationError(f"Marqueurs dupliqués sur le chromosome {chrom}: {dup}")
        bad = np.where(np.diff(s.values) <= 0)[0]
        if len(bad) > 0:
            names = [f"{s.index[i]}->{s.index[i + 1]}" for i in bad[:10]]
            raise ConfigurationError(
                f"Positions non strictement croissantes sur le chromosome {chrom}: {names}"
            )

    def __repr__(self):
        n = sum(len(s) for s in self._pos.values())
        return f"GeneticMap({len(self._pos)} chromosomes, {n} positions)"

    def __len__(self):
        return len(self._pos)

    def __contains__(self, chrom):
        return str(chrom) in self._pos

    def __getitem__(self, chrom):
        return self._pos[str(chrom)]

    @property
    def chromosomes(self):
        return list(self._pos)

    def markers(self, chrom):
        return list(self._pos[str(chrom)].index)

    def positions(self, chrom):
        return self._pos[str(chrom)].values

    def is_x(self, chrom):
        return str(chrom) in self.x_chrs

    def rec_fracs(self, chrom, map_function='haldane'):
        """Fractions de recombinaison entre positions adjacentes."""
        r = np.array(dist_to_rf(np.diff(self.positions(chrom)), map_function), dtype=float)
        r.setflags(write=False)
        return r

    def replace(self, chrom, positions):
        """Nouvelle carte où le chromosome `chrom` a d'autres positions."""
        new = dict(self._pos)
        new[str(chrom)] = positions
        return GeneticMap(new, self.x_chrs)

    def from_rec_fracs(self, chrom, rec_fracs, map_function='haldane'):
        """
        Reconstruit l'espacement d'un chromosome à partir des fractions de
        recombinaison, en gardant la position du premier marqueur.
        """
        s = self._pos[str(chrom)]
        rec_fracs = np.asarray(rec_fracs, dtype=float)
        if len(rec_fracs) != len(s) - 1:
            raise ConfigurationError(
                f"{len(rec_fracs)} fractions pour {len(s)} marqueurs (chromosome {chrom})"
            )
        d = rf_to_dist(rec_fracs, map_function)
        new_pos = s.values[0] + np.concatenate([[0.0], np.cumsum(d)])
        return pd.Series(new_pos, index=s.index)

    def subset(self, chroms):
        chroms = [str(c) for c in chroms]
        missing = [c for c in chroms if c not in self._pos]
        if missing:
            raise ConfigurationError(f"Chromosomes absents de la carte: {missing}")
        return GeneticMap({c: self._pos[c] for c in chroms},
                          [c for c in chroms if c in self.x_chrs])

    def insert_pseudomarkers(self, step, off_end=0.0):
        """
        Ajoute une grille régulière de pseudomarqueurs (pas `step` cM),
        éventuellement prolongée de `off_end` cM aux extrémités.
        Les points de grille confondus avec un marqueur sont omis.
        """
        step, off_end = check_step(step, off_end)
        if step == 0 and off_end == 0:
            return self
        new = {}
        for chrom, s in self._pos.items():
            lo, hi = s.values[0] - off_end, s.values[-1] + off_end
            if step > 0:
                grid = np.arange(lo, hi + step * 1e-8, step)
            else:
                grid = np.array([lo, hi])
            keep = ~np.any(np.isclose(grid[:, None], s.values[None, :], atol=1e-8), axis=1)
            grid = grid[keep]
            names = [f"c{chrom}.loc{k + 1}" for k in range(len(grid))]
            merged = pd.concat([s, pd.Series(grid, index=names)]).sort_values(kind='mergesort')
            new[chrom] = merged
        return GeneticMap(new, self.x_chrs)
