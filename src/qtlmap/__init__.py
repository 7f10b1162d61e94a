"""
qtlmap — Cartographie de QTL dans les croisements expérimentaux
===============================================================

Reconstruction des génotypes par HMM (probabilités conditionnelles,
Viterbi), ré-estimation de la carte génétique par EM et scans génomiques
de Haley-Knott (modèle linéaire ou mixte).

Modules:
    config: Codes génotypiques, valeurs par défaut, validation
    genetic_map: Carte génétique et fonctions de cartographie
    cross: Modèles de croisement (bc, f2, riself, risib, dh)
    dataset: Données d'un croisement alignées par individu
    hmm: Forward-backward, Viterbi, probabilités de génotypes
    est_map: Estimation de la carte par EM
    regression: QR à pivot / Cholesky, RSS et ajustements
    kinship: Matrice d'apparentement et héritabilité (REML)
    scan: Scan génomique et détection des pics
    simulate: Simulation de croisements et de phénotypes
"""

__version__ = "1.0.0"

from .errors import ConfigurationError, AlignmentError, RankDeficientError, Issue
from .genetic_map import GeneticMap
from .cross import get_cross_model
from .dataset import CrossData
from .hmm import ChromosomeHMM, GenoProbs, calc_genoprob, viterbi, maxmarg
from .est_map import MapEstimator, MapState, est_map
from .regression import QRFactorization, CholeskyFactorization, factorize, rss_only, fit
from .kinship import calc_kinship
from .scan import ScanResult, scan1, find_peaks
from .simulate import simulate_cross, simulate_phenotype

__all__ = [
    "ConfigurationError",
    "AlignmentError",
    "RankDeficientError",
    "Issue",
    "GeneticMap",
    "get_cross_model",
    "CrossData",
    "ChromosomeHMM",
    "GenoProbs",
    "calc_genoprob",
    "viterbi",
    "maxmarg",
    "MapEstimator",
    "MapState",
    "est_map",
    "QRFactorization",
    "CholeskyFactorization",
    "factorize",
    "rss_only",
    "fit",
    "calc_kinship",
    "ScanResult",
    "scan1",
    "find_peaks",
    "simulate_cross",
    "simulate_phenotype",
]
