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

# Submodule "integrate": Integrals of detection functions over distance ranges (per observation)

# Line transects integrate g(x), point transects g(r) 2r ; detection probabilities
# divide these by (width - left) or (width^2 - left^2) resp.

import functools

import numpy as np
from scipy import integrate as sintg
from scipy import special

from . import log
from .detfunc import uniqueRows

logger = log.logger('pds.int')

KDefGaussNodes = 64
Methods = ['gauss', 'adaptive']

# Optional per observation integration range columns (override the global one).
RangeCols = ['intLower', 'intUpper']


@functools.lru_cache(maxsize=8)
def gaussLegendre(nNodes):

    return np.polynomial.legendre.leggauss(nNodes)


def integrate(func, lower, upper, point=False, method='gauss', nNodes=KDefGaussNodes):

    """Per row integral of func over [lower, upper] (times 2x for points)

    Negative func values are clamped to 0 ; NaN ones are kept (=> NaN integral).

    Parameters:
    :param func: function(X, rows) => array with X shape, X being a 2D (len(rows), m) array of distances
                 and rows the index of the concerned rows (in lower / upper)
    :param lower: 1D array of lower bounds
    :param upper: 1D array of upper bounds (same size as lower)
    :param point: if True, integrate func(x) * 2x
    :param method: 'gauss' for Gauss-Legendre quadrature with nNodes nodes, 'adaptive' for scipy quad
    :param nNodes: number of Gauss-Legendre nodes
    """

    assert method in Methods, f'Unknown integration method {method} ; should be one of {Methods}'

    lower = np.asarray(lower, dtype=float)
    upper = np.asarray(upper, dtype=float)

    if method == 'gauss':

        nodes, weights = gaussLegendre(nNodes)
        half = (upper - lower) / 2
        X = ((upper + lower) / 2)[:, np.newaxis] + half[:, np.newaxis] * nodes[np.newaxis, :]
        vals = np.clip(func(X, np.arange(len(lower))), 0, None)
        if point:
            vals = vals * 2 * X

        return (vals @ weights) * half

    # Adaptive quadrature, row by row.
    def integrand(x, row):
        val = max(func(np.array([[x]]), np.array([row]))[0, 0], 0.0)
        return val * 2 * x if point else val

    results = np.empty(len(lower))
    for row in range(len(lower)):
        results[row] = sintg.quad(integrand, lower[row], upper[row], args=(row,), limit=200)[0]

    return results


def halfNormalIntegral(scale, lower, upper, point=False):

    """Closed form integral of the half-normal key over [lower, upper] (times 2x for points)"""

    if point:
        return 2 * scale ** 2 * (np.exp(-0.5 * (lower / scale) ** 2) - np.exp(-0.5 * (upper / scale) ** 2))

    rt2s = np.sqrt(2) * scale
    return scale * np.sqrt(np.pi / 2) * (special.erf(upper / rt2s) - special.erf(lower / rt2s))


def integrateRows(ddfo, lower, upper, method='gauss', nNodes=KDefGaussNodes):

    """Per row integral of a DetectionFunction (times 2x for points)

    Computed only once per unique (scale, shape, lower, upper) combination.

    Parameters:
    :param ddfo: DetectionFunction
    :param lower: lower bounds, scalar or per row
    :param upper: upper bounds, scalar or per row
    :param method: see integrate
    :param nNodes: see integrate
    """

    lower = np.broadcast_to(np.asarray(lower, dtype=float), (ddfo.nRows,))
    upper = np.broadcast_to(np.asarray(upper, dtype=float), (ddfo.nRows,))

    scale, shape = ddfo.scales(), ddfo.shapes()

    if ddfo.isClosedForm:
        return halfNormalIntegral(scale, lower, upper, point=ddfo.point)

    reps, inverse = uniqueRows(scale, shape, lower, upper)

    results = integrate(lambda X, rows: ddfo.evaluate(X, rows=reps[rows]), lower[reps], upper[reps],
                        point=ddfo.point, method=method, nNodes=nNodes)

    return results if inverse is None else results[inverse]


def rangeArea(lower, upper, point=False):

    """Integral of 1 (lines) or 2x (points) over [lower, upper]"""

    return upper ** 2 - lower ** 2 if point else upper - lower


def integrationRange(nRows, left, width, intRange=None, dfData=None):

    """Per row (lower, upper) integration bounds

    Parameters:
    :param nRows: number of rows
    :param left: default lower bound
    :param width: default upper bound
    :param intRange: None => [left, width] ; otherwise 2-item sequence (all rows) or (nRows, 2) array
    :param dfData: if not None, and it has RangeCols columns, their non-NaN values override the above
                   (per observation integration range, carried along the data when rows get dropped)

    :raises ValueError: on a wrongly shaped intRange, or some lower bound not below the upper one
    """

    if intRange is None:
        lower, upper = np.full(nRows, float(left)), np.full(nRows, float(width))
    else:
        intRange = np.asarray(intRange, dtype=float)
        if intRange.ndim == 1 and len(intRange) == 2:
            lower, upper = np.full(nRows, intRange[0]), np.full(nRows, intRange[1])
        elif intRange.shape == (nRows, 2):
            lower, upper = intRange[:, 0].copy(), intRange[:, 1].copy()
        else:
            raise ValueError(f'intRange must be a 2-item sequence, or a ({nRows}, 2) array'
                             f' ; got shape {intRange.shape}')

    if dfData is not None and all(col in dfData.columns for col in RangeCols):
        lowCol, uppCol = (dfData[col].values.astype(float) for col in RangeCols)
        lower = np.where(np.isnan(lowCol), lower, lowCol)
        upper = np.where(np.isnan(uppCol), upper, uppCol)

    if (lower >= upper).any():
        raise ValueError('Integration range lower bound must be < upper bound (check rows {})'
                         .format(list(np.flatnonzero(lower >= upper)[:10])))

    return lower, upper


def detectionProbabilities(ddfo, intRange=None, dfData=None, method='gauss', nNodes=KDefGaussNodes):

    """Per row probability of detection within the integration range

    Parameters:
    :param ddfo: DetectionFunction
    :param intRange: see integrationRange
    :param dfData: see integrationRange (same rows as ddfo)
    """

    lower, upper = integrationRange(ddfo.nRows, ddfo.left, ddfo.width, intRange, dfData=dfData)

    return integrateRows(ddfo, lower, upper, method=method, nNodes=nNodes) \
           / rangeArea(lower, upper, point=ddfo.point)


def cdf(ddfo, x, lower=None, upper=None, method='gauss', nNodes=KDefGaussNodes):

    """Per row value of the fitted distance distribution CDF at x (1 distance per row)

    Parameters:
    :param ddfo: DetectionFunction
    :param x: distances, 1 per row
    :param lower: per row lower integration bound (default: left)
    :param upper: per row upper integration bound (default: width)
    """

    lower = ddfo.left if lower is None else lower
    upper = ddfo.width if upper is None else upper

    total = integrateRows(ddfo, lower, upper, method=method, nNodes=nNodes)
    partial = integrateRows(ddfo, lower, np.clip(x, lower, upper), method=method, nNodes=nNodes)

    return partial / total
