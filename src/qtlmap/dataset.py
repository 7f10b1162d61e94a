"""
Jeu de données d'un croisement : génotypes observés, carte génétique et
informations par individu (sexe, direction), alignés par identifiant.
"""

import numpy as np
import pandas as pd

from .config import FEMALE, MALE, FORWARD, REVERSE, MISSING
from .cross import get_cross_model
from .errors import AlignmentError, ConfigurationError, check_unique_ids
from .genetic_map import GeneticMap


class CrossData:
    """
    Données d'un croisement, validées à la construction.

    Parameters
    ----------
    cross_type : str ou CrossModel
        'bc', 'f2', 'riself', 'risib', 'dh'
    genotypes : dict
        Clé = chromosome, valeur = DataFrame (index = identifiants des
        individus, colonnes = marqueurs) de codes génotypiques entiers
    genetic_map : GeneticMap
    cross_info : DataFrame, optional
        Index = identifiants ; colonnes 'sex' et/ou 'direction'.
        Les individus absents lèvent AlignmentError ; les lignes en trop
        sont ignorées.
    """

    def __init__(self, cross_type, genotypes, genetic_map, cross_info=None):
        if not isinstance(genetic_map, GeneticMap):
            raise ConfigurationError("genetic_map doit être un GeneticMap")
        self.model = get_cross_model(cross_type)
        self.map = genetic_map

        if not genotypes:
            raise ConfigurationError("Aucun génotype fourni")
        geno = {str(c): df for c, df in genotypes.items()}
        unknown = [c for c in geno if c not in genetic_map]
        if unknown:
            raise ConfigurationError(f"Chromosomes génotypés absents de la carte: {unknown}")

        ids = None
        self._geno = {}
        for chrom in genetic_map.chromosomes:
            if chrom not in geno:
                continue
            df = geno[chrom]
            check_unique_ids(df.index, f"les génotypes du chromosome {chrom}")
            if ids is None:
                ids = df.index
            elif not df.index.sort_values().equals(ids.sort_values()):
                diff = ids.symmetric_difference(df.index)
                raise AlignmentError(
                    f"Individus différents entre chromosomes ({chrom})", list(diff)
                )
            self._geno[chrom] = self._encode_chromosome(chrom, df.reindex(ids))
        self.ids = pd.Index(ids)
        self.chromosomes = list(self._geno)

        self.cross_info = self._check_cross_info(cross_info)

    # ------------------------------------------------------------------
    def _encode_chromosome(self, chrom, df):
        is_x = self.map.is_x(chrom)
        if is_x and not self.model.supports_x:
            raise ConfigurationError(
                f"Le croisement {self.model.name} ne gère pas de chromosome X ({chrom})"
            )
        markers = self.map.markers(chrom)
        extra = [m for m in df.columns.astype(str) if m not in set(markers)]
        if extra:
            raise ConfigurationError(
                f"Marqueurs du chromosome {chrom} absents de la carte: {extra[:10]}"
            )
        df = df.copy()
        df.columns = df.columns.astype(str)
        # Marqueurs de la carte sans génotype : colonnes manquantes
        values = df.reindex(columns=markers).fillna(MISSING).to_numpy()
        if not np.all(values == np.round(values)):
            raise ConfigurationError(f"Codes génotypiques non entiers sur le chromosome {chrom}")
        values = values.astype(np.int8)
        bad = set(np.unique(values).tolist()) - self.model.valid_codes(is_x)
        if bad:
            raise ConfigurationError(
                f"Codes génotypiques invalides pour {self.model.name} "
                f"(chromosome {chrom}): {sorted(bad)}"
            )
        values.setflags(write=False)
        return values

    def _check_cross_info(self, cross_info):
        info = pd.DataFrame(
            {'sex': FEMALE, 'direction': FORWARD}, index=self.ids
        )
        if cross_info is None:
            return info
        check_unique_ids(cross_info.index, "cross_info")
        missing = self.ids.difference(cross_info.index)
        if len(missing) > 0:
            raise AlignmentError("Individus absents de cross_info", list(missing))
        sub = cross_info.reindex(self.ids)
        for col, allowed in (('sex', (FEMALE, MALE)), ('direction', (FORWARD, REVERSE))):
            if col not in sub.columns:
                continue
            vals = sub[col]
            if vals.isna().any() or not vals.isin(allowed).all():
                raise ConfigurationError(f"Valeurs de '{col}' hors de {allowed}")
            info[col] = vals.astype(int)
        return info

    # ------------------------------------------------------------------
    def __repr__(self):
        return (f"CrossData({self.model.name}, {len(self.ids)} individus, "
                f"{len(self.chromosomes)} chromosomes)")

    @property
    def n_ind(self):
        return len(self.ids)

    def is_x(self, chrom):
        return self.map.is_x(chrom)

    def genotypes(self, chrom):
        """Codes observés (n_ind, n_markers), dans l'ordre de la carte."""
        return self._geno[str(chrom)]

    def individual_info(self, ind):
        """(ligne, sexe, direction) pour un identifiant."""
        try:
            row = self.ids.get_loc(ind)
        except KeyError:
            raise AlignmentError("Individu inconnu", [ind]) from None
        info = self.cross_info.iloc[row]
        return row, int(info['sex']), int(info['direction'])

    def subset(self, ids=None, chromosomes=None):
        """Sous-ensemble d'individus et/ou de chromosomes."""
        ids = self.ids if ids is None else pd.Index(ids)
        missing = ids.difference(self.ids)
        if len(missing) > 0:
            raise AlignmentError("Individus absents du croisement", list(missing))
        chroms = self.chromosomes if chromosomes is None else [str(c) for c in chromosomes]
        rows = self.ids.get_indexer(ids)
        geno = {
            c: pd.DataFrame(self._geno[c][rows], index=ids, columns=self.map.markers(c))
            for c in chroms
        }
        return CrossData(self.model, geno, self.map.subset(chroms),
                         self.cross_info.loc[ids])

    def with_map(self, genetic_map):
        """Même croisement avec une autre carte (mêmes marqueurs)."""
        geno = {
            c: pd.DataFrame(self._geno[c], index=self.ids, columns=self.map.markers(c))
            for c in self.chromosomes
        }
        return CrossData(self.model, geno, genetic_map, self.cross_info)
