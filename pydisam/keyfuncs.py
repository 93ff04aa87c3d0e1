# coding: utf-8

# PyDiSam: Distance Sampling detection function fitting and abundance estimation

# Copyright (C) 2021 Jean-Philippe Meuret

# This program is free software: you can redistribute it and/or modify it under the terms
# of the GNU General Public License as published by the Free Software Foundation,
# either version 3 of the License, or (at your option) any later version.
# This program is distributed in the hope that it will be useful, but WITHOUT ANY WARRANTY;
# without even the implied warranty of MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.
# See the GNU General Public License for more details.
# You should have received a copy of the GNU General Public License along with this program.
# If not, see https://www.gnu.org/licenses/.

# Submodule "keyfuncs": Detection function kernels = key functions and adjustment series bases

# All functions here are pure and vectorised (numpy broadcasting rules apply between
# distances, scales and shapes : ex. distances (n, m) with per-row scales (n, 1)).

import numpy as np
from scipy import special

from . import log

logger = log.logger('pds.key')


# Key functions ##############################################################################
def halfNormal(x, scale, shape=None):

    return np.exp(-0.5 * (x / scale) ** 2)


def hazardRate(x, scale, shape):

    # At x = 0, (0/scale)**-shape = inf => g = 1 (numpy warnings are silenced by the caller policy)
    with np.errstate(divide='ignore', over='ignore'):
        return 1.0 - np.exp(-(np.abs(x) / scale) ** (-shape))


def gammaApexFactor(shape):

    """The "fr" factor of the apex-scaled gamma key: apex = (shape - 1) * scale * fr"""

    shm1 = shape - 1.0
    with np.errstate(divide='ignore', invalid='ignore'):
        return np.exp(special.xlogy(shm1, shm1 / np.e) - special.gammaln(shape))


def gammaKey(x, scale, shape):

    """Gamma key, scaled for its maximum (= 1) to be at the apex ; shape must be > 1"""

    shm1 = shape - 1.0
    v = x / (scale * gammaApexFactor(shape))
    with np.errstate(divide='ignore', invalid='ignore'):
        return np.exp(special.xlogy(shm1, v / shm1) - v + shm1)


def gammaApex(scale, shape):

    return (shape - 1.0) * scale * gammaApexFactor(shape)


def uniform(x, scale=None, shape=None):

    return np.ones_like(np.asarray(x, dtype=float))


def threshold1(x, scale, shape):

    """Gaussian CDF smoothed step: shape = step location in scale units, scale = transition width"""

    return special.erfc(x / scale - shape) / special.erfc(-shape)


def threshold2(x, scale, shape):

    """Logistic smoothed step: shape = step location in scale units, scale = transition width"""

    with np.errstate(over='ignore'):
        return (1.0 + np.exp(-shape)) / (1.0 + np.exp(x / scale - shape))


def twoPartNormal(x, scale, shape):

    """Half-normal with scale * shape on the left (x < 0), and scale on the right of the apex 0"""

    leftScale = scale * shape
    return np.where(x < 0, np.exp(-0.5 * (x / leftScale) ** 2), np.exp(-0.5 * (x / scale) ** 2))


# Key function name => function, full name, has a shape parameter, transformation from shape parameter,
#                      shape parameter can depend on covariates.
KeyFunctions = \
    dict(hn=(halfNormal, 'half-normal', False, None, False),
         hr=(hazardRate, 'hazard-rate', True, np.exp, True),
         gamma=(gammaKey, 'gamma', True, lambda p: np.exp(p) + 1.0, True),
         unif=(uniform, 'uniform', False, None, False),
         th1=(threshold1, 'threshold-1', True, np.exp, False),
         th2=(threshold2, 'threshold-2', True, np.exp, False),
         tpn=(twoPartNormal, 'two-part-normal', True, np.exp, False))

KeyNames = list(KeyFunctions.keys())


def keyFunction(key):

    return KeyFunctions[key][0]


def hasShape(key):

    return KeyFunctions[key][2]


def hasScale(key):

    return key != 'unif'


def shapeTransform(key):

    return KeyFunctions[key][3]


def shapeCovariates(key):

    return KeyFunctions[key][4]


# Adjustment series bases ####################################################################
def cosineBasis(order, xs):

    return np.cos(order * np.pi * xs)


def polynomialBasis(order, xs):

    return xs ** order


def hermiteBasis(order, xs):

    """Probabilists' Hermite polynomial He_order(xs)"""

    return special.eval_hermitenorm(order, xs)


AdjustmentBases = dict(cos=cosineBasis, poly=polynomialBasis, herm=hermiteBasis)

AdjustmentNames = list(AdjustmentBases.keys())


def adjustmentSum(xs, series, orders, coefs):

    """Sum over terms of coef_j * basis_order_j(xs)"""

    basis = AdjustmentBases[series]
    total = np.zeros_like(np.asarray(xs, dtype=float))
    for order, coef in zip(orders, coefs):
        total = total + coef * basis(order, xs)

    return total


def detectionFunction(x, key, scale=1.0, shape=None,
                      adjSeries=None, adjOrders=(), adjCoefs=(), adjScale=1.0, adjExpon=False,
                      standardize=True):

    """Pointwise value of the (combined) detection function

    g(x) = key(x) * A(x) / A(0), with A(x) = 1 + sum(a_j * b_j(x/adjScale)), or A(x) = exp(sum(...))
    when adjExpon, the standardisation by A(0) ensuring g(0) = key(0) (= 1 for all keys but gamma).

    Notes:
    * no clamping is done here : values < 0 or > 1 may be returned (see integrate and monotonicity check),
    * adjScale is either the right truncation distance or the key scale parameter (see DetectionFunctionSpec).

    Parameters:
    :param x: distances (numpy array or scalar)
    :param key: key function name (see KeyFunctions)
    :param scale: key scale (broadcastable to x)
    :param shape: key shape, already transformed (broadcastable to x ; None if N/A)
    :param adjSeries: None or adjustment series name (see AdjustmentBases)
    :param adjOrders: adjustment terms orders
    :param adjCoefs: adjustment terms coefficients
    :param adjScale: distance scaling for adjustment terms (broadcastable to x)
    :param adjExpon: if True, exponentiated adjustments, otherwise multiplicative ones
    :param standardize: if True, divide by the adjustment factor value at x = 0
    """

    g = keyFunction(key)(x, scale, shape)

    if adjSeries is not None and len(adjOrders) > 0:

        adj = adjustmentSum(x / adjScale, adjSeries, adjOrders, adjCoefs)
        adj0 = adjustmentSum(np.zeros_like(adj), adjSeries, adjOrders, adjCoefs) if standardize else 0.0
        if adjExpon:
            g = g * np.exp(adj - adj0)
        else:
            with np.errstate(divide='ignore', invalid='ignore'):
                g = g * (1.0 + adj) / (1.0 + adj0)

    return g
