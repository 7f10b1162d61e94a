"""
Configuration : codes des génotypes, valeurs par défaut et validation
des paramètres numériques.
"""

import numbers

import numpy as np

from .errors import ConfigurationError

# ============================================================
# Encodage des génotypes observés
#   0: manquant
#   1: AA   2: AB   3: BB
#   4: "pas BB" (AA ou AB)   5: "pas AA" (AB ou BB)
# Sur le X, les mâles hémizygotes sont codés AA (allèle A) ou BB (allèle B).
# ============================================================

MISSING = 0
AA = 1
AB = 2
BB = 3
NOT_BB = 4
NOT_AA = 5

# Sexe (colonne 'sex' du cross info)
FEMALE = 0
MALE = 1

# Direction du croisement (colonne 'direction' du cross info)
#   FORWARD: (A×B)×(A×B)   REVERSE: (B×A)×(B×A)
FORWARD = 0
REVERSE = 1

# ============================================================
# Valeurs par défaut
# ============================================================

DEFAULT_ERROR_PROB = 1e-4
# Taux d'erreur utilisé pour ré-évaluer une position dont la vraisemblance
# totale est nulle (données contradictoires)
DEFAULT_FLOOR_ERROR = 0.01
# Tolérance de rang, relative au plus grand pivot de la décomposition
DEFAULT_RANK_TOL = 1e-12
DEFAULT_EM_TOL = 1e-6
DEFAULT_EM_MAXIT = 10000
DEFAULT_MAP_FUNCTION = 'haldane'

# Bornes des fractions de recombinaison pendant l'EM
MIN_REC_FRAC = 1e-12
MAX_REC_FRAC = 0.5 - 1e-12


# ============================================================
# Validation (appelée avant tout calcul)
# ============================================================

def check_error_prob(error_prob, name='error_prob'):
    """Vérifie qu'un taux d'erreur est dans [0, 1)."""
    if not isinstance(error_prob, numbers.Real) or not np.isfinite(error_prob):
        raise ConfigurationError(f"{name} doit être un réel, reçu {error_prob!r}")
    if error_prob < 0 or error_prob >= 1:
        raise ConfigurationError(f"{name} doit être dans [0, 1), reçu {error_prob}")
    return float(error_prob)


def check_tol(tol, name='tol'):
    """Vérifie qu'une tolérance est strictement positive."""
    if not isinstance(tol, numbers.Real) or not np.isfinite(tol) or tol <= 0:
        raise ConfigurationError(f"{name} doit être > 0, reçu {tol!r}")
    return float(tol)


def check_maxit(maxit):
    if not isinstance(maxit, numbers.Integral) or maxit < 0:
        raise ConfigurationError(f"maxit doit être un entier >= 0, reçu {maxit!r}")
    return int(maxit)


def check_cores(cores):
    if not isinstance(cores, numbers.Integral) or cores < 1:
        raise ConfigurationError(f"cores doit être un entier >= 1, reçu {cores!r}")
    return int(cores)


def check_step(step, off_end=0.0):
    """Vérifie le pas (cM) de la grille de pseudomarqueurs."""
    if not isinstance(step, numbers.Real) or step < 0:
        raise ConfigurationError(f"step doit être >= 0, reçu {step!r}")
    if not isinstance(off_end, numbers.Real) or off_end < 0:
        raise ConfigurationError(f"off_end doit être >= 0, reçu {off_end!r}")
    return float(step), float(off_end)
