# _mirror_maps.py
"""
Mirror maps for online convex optimization.

Implements Legendre-type mirror potentials and their forward/inverse mappings
used by the online gradient strategy in both its mirror-descent (OMD) and
follow-the-regularized-leader (FTRL) forms.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np
from scipy.special import softmax

from skaggregate.aggregation._utils import CLIP_EPSILON


class BaseMirrorMap(ABC):
    r"""
    Abstract base class for mirror maps (Legendre-type potentials).

    A mirror map is a strictly convex, differentiable potential :math:`\psi`
    with gradient :math:`\nabla \psi : \mathcal{W} \to \mathcal{Z}` a bijection
    between the interior of the primal domain and the dual space. Its inverse
    mapping is :math:`\nabla \psi^*`, the gradient of the Fenchel conjugate.

    References
    ----------
    .. [1] Beck, A., & Teboulle, M. (2003). Mirror Descent and Nonlinear Projected
       Subgradient Methods for Convex Optimization. SIAM J. Optim., 13(1), 188–205.
    """

    requires_simplex: bool = False

    @abstractmethod
    def grad_psi(self, w: np.ndarray) -> np.ndarray:
        """Forward map: primal → dual."""
        pass

    @abstractmethod
    def grad_psi_star(self, z: np.ndarray) -> np.ndarray:
        """Inverse map: dual → primal."""
        pass

    def project_geom(self, w: np.ndarray) -> np.ndarray:
        """Optional geometry-specific normalization of `w`. Default is identity."""
        return w


class EuclideanMirrorMap(BaseMirrorMap):
    """Euclidean mirror map for Online Gradient Descent."""

    def grad_psi(self, w: np.ndarray) -> np.ndarray:
        return w

    def grad_psi_star(self, z: np.ndarray) -> np.ndarray:
        return z


class EntropyMirrorMap(BaseMirrorMap):
    """Entropy mirror map: the exponentiated gradient update."""

    requires_simplex = True

    def grad_psi(self, w: np.ndarray) -> np.ndarray:
        return np.log(np.maximum(w, CLIP_EPSILON)) + 1

    def grad_psi_star(self, z: np.ndarray) -> np.ndarray:
        # The dual-to-primal mapping for entropy is the softmax function.
        return softmax(z - 1.0, axis=0)

    def project_geom(self, w: np.ndarray) -> np.ndarray:
        """Ensure unit sum for simplex."""
        return w / np.sum(w)
