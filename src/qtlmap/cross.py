"""
Modèles de croisement : états génotypiques possibles, loi initiale,
probabilités de transition et d'émission, et mise à jour des fractions
de recombinaison pour l'EM.

Toutes les méthodes sont des fonctions pures de leurs arguments.
Les matrices sont exprimées sur l'ensemble complet des états du
chromosome ; les états impossibles pour un individu (sexe, direction)
ont une probabilité initiale nulle.
"""

import numpy as np

from .config import (
    MISSING, AA, AB, BB, NOT_BB, NOT_AA,
    FEMALE, MALE, FORWARD, REVERSE,
    MIN_REC_FRAC, MAX_REC_FRAC,
)
from .errors import ConfigurationError

N_CODES = 6


def _switch_matrix(rf, n_states, blocks):
    """
    Transitions "reste / change" (1-rf, rf) à l'intérieur de chaque paire
    d'états de `blocks`. Forme (len(rf), n_states, n_states).
    """
    rf = np.asarray(rf, dtype=float)
    trans = np.zeros((len(rf), n_states, n_states))
    for i, j in blocks:
        trans[:, i, i] = 1.0 - rf
        trans[:, j, j] = 1.0 - rf
        trans[:, i, j] = rf
        trans[:, j, i] = rf
    return trans


def _switch_nrec(n_rf, n_states, blocks):
    nrec = np.zeros((n_rf, n_states, n_states))
    for i, j in blocks:
        nrec[:, i, j] = 1.0
        nrec[:, j, i] = 1.0
    return nrec


class CrossModel:
    """
    Interface commune aux types de croisement.

    Les sous-classes définissent `name`, `_states`, `_possible`,
    `_code_states`, `init`, `transition`, `nrec`, `n_meioses` et
    éventuellement `est_rec_frac`.
    """

    name = None
    supports_x = False
    default_map_function = 'haldane'

    def __repr__(self):
        return f"{type(self).__name__}()"

    # ------------------------------------------------------------------
    def states(self, is_x=False):
        """Noms des états génotypiques du chromosome."""
        return list(self._states(is_x))

    def n_states(self, is_x=False):
        return len(self._states(is_x))

    def possible_states(self, is_x=False, sex=FEMALE, direction=FORWARD):
        """Indices des états possibles pour un individu."""
        return np.array(self._possible(is_x, sex, direction), dtype=int)

    def valid_codes(self, is_x=False):
        return {MISSING} | set(self._code_states(is_x))

    def emission_table(self, error_prob, is_x=False, sex=FEMALE, direction=FORWARD):
        """
        Table d'émission P(code observé | état), forme (N_CODES, n_states).

        Pour un code compatible avec k états parmi les p états possibles :
        1 - e/k pour les états compatibles, e/(p-k) pour les autres.
        Un code incompatible avec tous les états possibles a une
        probabilité e partout (nulle si e = 0 : données contradictoires).
        """
        names = self._states(is_x)
        possible = list(self._possible(is_x, sex, direction))
        table = np.zeros((N_CODES, len(names)))
        table[MISSING, possible] = 1.0
        for code, compat_names in self._code_states(is_x).items():
            compat = [i for i in possible if names[i] in compat_names]
            k, p = len(compat), len(possible)
            if k == 0:
                table[code, possible] = error_prob
                continue
            table[code, possible] = error_prob / (p - k) if p > k else 0.0
            table[code, compat] = 1.0 - error_prob / k if p > k else 1.0
        return table

    def est_rec_frac(self, expected_nrec, meioses, is_x=False):
        """Étape M : fraction de recombinaison de vraisemblance maximale."""
        r = np.asarray(expected_nrec, dtype=float) / meioses
        return np.clip(r, MIN_REC_FRAC, MAX_REC_FRAC)


# ============================================================
# Backcross (A×B)×A
# ============================================================

class Backcross(CrossModel):
    name = 'bc'
    supports_x = True

    _AUTO = ('AA', 'AB')
    _X = ('AA', 'AB', 'AY', 'BY')

    def _states(self, is_x):
        return self._X if is_x else self._AUTO

    def _possible(self, is_x, sex, direction):
        if is_x and sex == MALE:
            return (2, 3)
        return (0, 1)

    def _code_states(self, is_x):
        if is_x:
            return {AA: {'AA', 'AY'}, AB: {'AB'}, BB: {'BY'}}
        return {AA: {'AA'}, AB: {'AB'}}

    def init(self, is_x=False, sex=FEMALE, direction=FORWARD):
        p = np.zeros(len(self._states(is_x)))
        p[list(self._possible(is_x, sex, direction))] = 0.5
        return p

    def transition(self, rf, is_x=False, sex=FEMALE, direction=FORWARD):
        if is_x:
            return _switch_matrix(rf, 4, [(0, 1), (2, 3)])
        return _switch_matrix(rf, 2, [(0, 1)])

    def nrec(self, rf, is_x=False, sex=FEMALE, direction=FORWARD):
        if is_x:
            return _switch_nrec(len(rf), 4, [(0, 1), (2, 3)])
        return _switch_nrec(len(rf), 2, [(0, 1)])

    def n_meioses(self, is_x=False, sex=FEMALE):
        return 1


# ============================================================
# Intercross (F2)
# ============================================================

class Intercross(CrossModel):
    """
    F2. Autosomes : AA, AB, BB avec deux méioses informatives.
    X : les femelles reçoivent le X paternel du F1 (A en direction
    FORWARD, B en REVERSE) ; les mâles sont hémizygotes (AY, BY).
    """

    name = 'f2'
    supports_x = True

    _AUTO = ('AA', 'AB', 'BB')
    _X = ('AA', 'AB', 'BB', 'AY', 'BY')

    def _states(self, is_x):
        return self._X if is_x else self._AUTO

    def _possible(self, is_x, sex, direction):
        if not is_x:
            return (0, 1, 2)
        if sex == MALE:
            return (3, 4)
        return (1, 2) if direction == REVERSE else (0, 1)

    def _code_states(self, is_x):
        codes = {
            AA: {'AA'}, AB: {'AB'}, BB: {'BB'},
            NOT_BB: {'AA', 'AB'}, NOT_AA: {'AB', 'BB'},
        }
        if is_x:
            codes[AA] = {'AA', 'AY'}
            codes[BB] = {'BB', 'BY'}
            codes[NOT_BB] = {'AA', 'AB', 'AY'}
            codes[NOT_AA] = {'AB', 'BB', 'BY'}
        return codes

    def init(self, is_x=False, sex=FEMALE, direction=FORWARD):
        if not is_x:
            return np.array([0.25, 0.5, 0.25])
        p = np.zeros(5)
        p[list(self._possible(is_x, sex, direction))] = 0.5
        return p

    def transition(self, rf, is_x=False, sex=FEMALE, direction=FORWARD):
        rf = np.asarray(rf, dtype=float)
        if is_x:
            return _switch_matrix(rf, 5, self._x_blocks(sex, direction))
        s, r = 1.0 - rf, rf
        trans = np.empty((len(rf), 3, 3))
        trans[:, 0, 0] = s * s
        trans[:, 0, 1] = 2.0 * r * s
        trans[:, 0, 2] = r * r
        trans[:, 1, 0] = r * s
        trans[:, 1, 1] = s * s + r * r
        trans[:, 1, 2] = r * s
        trans[:, 2, 0] = r * r
        trans[:, 2, 1] = 2.0 * r * s
        trans[:, 2, 2] = s * s
        return trans

    @staticmethod
    def _x_blocks(sex, direction):
        if sex == MALE:
            return [(3, 4)]
        return [(1, 2)] if direction == REVERSE else [(0, 1)]

    def nrec(self, rf, is_x=False, sex=FEMALE, direction=FORWARD):
        rf = np.asarray(rf, dtype=float)
        if is_x:
            return _switch_nrec(len(rf), 5, self._x_blocks(sex, direction))
        nrec = np.array([[0.0, 1.0, 2.0],
                         [1.0, 0.0, 1.0],
                         [2.0, 1.0, 0.0]])
        nrec = np.repeat(nrec[None, :, :], len(rf), axis=0)
        # AB -> AB : zéro ou deux recombinaisons
        s2, r2 = (1.0 - rf) ** 2, rf ** 2
        nrec[:, 1, 1] = 2.0 * r2 / (s2 + r2)
        return nrec

    def n_meioses(self, is_x=False, sex=FEMALE):
        return 1 if is_x else 2


# ============================================================
# Lignées recombinantes et haploïdes doublés
# ============================================================

class _TwoStateCross(CrossModel):
    """Croisements à deux états homozygotes AA / BB."""

    _STATES = ('AA', 'BB')

    def _states(self, is_x):
        return self._STATES

    def _possible(self, is_x, sex, direction):
        return (0, 1)

    def _code_states(self, is_x):
        return {AA: {'AA'}, BB: {'BB'}}

    def init(self, is_x=False, sex=FEMALE, direction=FORWARD):
        return np.array([0.5, 0.5])

    def expanded_rf(self, rf, is_x=False):
        """Fraction de recombinaison effective de la lignée (R)."""
        return np.asarray(rf, dtype=float)

    def contracted_rf(self, R, is_x=False):
        """Inverse de `expanded_rf`."""
        return np.asarray(R, dtype=float)

    def transition(self, rf, is_x=False, sex=FEMALE, direction=FORWARD):
        return _switch_matrix(self.expanded_rf(rf, is_x), 2, [(0, 1)])

    def nrec(self, rf, is_x=False, sex=FEMALE, direction=FORWARD):
        return _switch_nrec(len(rf), 2, [(0, 1)])

    def n_meioses(self, is_x=False, sex=FEMALE):
        return 1

    def est_rec_frac(self, expected_nrec, meioses, is_x=False):
        # L'EM est fermé sur l'échelle R, puis ramené à r
        R = np.asarray(expected_nrec, dtype=float) / meioses
        R = np.clip(R, 0.0, float(self.expanded_rf(MAX_REC_FRAC, is_x)))
        return np.clip(self.contracted_rf(R, is_x), MIN_REC_FRAC, MAX_REC_FRAC)


class DoubledHaploid(_TwoStateCross):
    name = 'dh'


class RISelf(_TwoStateCross):
    """RIL par autofécondation : R = 2r / (1 + 2r)."""

    name = 'riself'

    def expanded_rf(self, rf, is_x=False):
        rf = np.asarray(rf, dtype=float)
        return 2.0 * rf / (1.0 + 2.0 * rf)

    def contracted_rf(self, R, is_x=False):
        R = np.asarray(R, dtype=float)
        return R / (2.0 * (1.0 - R))


class RISib(_TwoStateCross):
    """
    RIL par croisements frère-sœur.
    Autosomes : R = 4r / (1 + 6r) ; X : R = (8/3) r / (1 + 4r), avec
    une loi initiale 2/3 - 1/3 selon la direction du croisement.
    """

    name = 'risib'
    supports_x = True

    def init(self, is_x=False, sex=FEMALE, direction=FORWARD):
        if not is_x:
            return np.array([0.5, 0.5])
        if direction == REVERSE:
            return np.array([1.0 / 3.0, 2.0 / 3.0])
        return np.array([2.0 / 3.0, 1.0 / 3.0])

    def expanded_rf(self, rf, is_x=False):
        rf = np.asarray(rf, dtype=float)
        if is_x:
            return (8.0 / 3.0) * rf / (1.0 + 4.0 * rf)
        return 4.0 * rf / (1.0 + 6.0 * rf)

    def contracted_rf(self, R, is_x=False):
        R = np.asarray(R, dtype=float)
        if is_x:
            return 3.0 * R / (8.0 - 12.0 * R)
        return R / (4.0 - 6.0 * R)


CROSS_TYPES = {
    cls.name: cls for cls in (Backcross, Intercross, RISelf, RISib, DoubledHaploid)
}


def get_cross_model(cross_type):
    """Instancie le modèle pour un type de croisement ('bc', 'f2', ...)."""
    if isinstance(cross_type, CrossModel):
        return cross_type
    try:
        return CROSS_TYPES[cross_type]()
    except (KeyError, TypeError):
        raise ConfigurationError(
            f"Type de croisement inconnu: {cross_type!r} "
            f"(choix: {', '.join(CROSS_TYPES)})"
        ) from None
