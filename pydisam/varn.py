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

# Submodule "varn": Empirical variance estimators of the encounter rate n / L
#                   (Fewster et al. 2009, Biometrics 65, 225-236)

# Samples are supposed to be given in their design order (matters for S* and O* estimators).
# All estimators are quadratic forms in the counts, hence covn by polarisation.

import numpy as np

from . import log

logger = log.logger('pds.ern')

LineEstimators = ['R2', 'R3', 'R4', 'S1', 'S2', 'O1', 'O2', 'O3']
PointEstimators = ['P2', 'P3']
Estimators = LineEstimators + PointEstimators


def _r2(lvec, nvec):

    k, L, n = len(lvec), lvec.sum(), nvec.sum()

    return k / (L ** 2 * (k - 1)) * np.sum(lvec ** 2 * (nvec / lvec - n / L) ** 2)


def _r3(lvec, nvec):

    k, L, n = len(lvec), lvec.sum(), nvec.sum()

    return 1 / (L * (k - 1)) * np.sum(lvec * (nvec / lvec - n / L) ** 2)


def _r4(lvec, nvec):

    k, L, n = len(lvec), lvec.sum(), nvec.sum()

    return 1 / (k * (k - 1)) * np.sum((nvec / lvec - n / L) ** 2)


def pairStrata(k):

    """Stratum index of each of k ordered samples: pairs of neighbours, the last stratum of 3 when k is odd"""

    nStrata = max(k // 2, 1)

    return np.minimum(np.arange(k) // 2, nStrata - 1)


def _stratified(lvec, nvec, within):

    L = lvec.sum()
    strata = pairStrata(len(lvec))
    total = 0.0
    for h in np.unique(strata):
        inH = strata == h
        total += (lvec[inH].sum() / L) ** 2 * within(lvec[inH], nvec[inH])

    return total


def _overlapping(lvec, nvec):

    """Weights and encounter rate differences between successive samples"""

    weights = lvec[:-1] * lvec[1:] / (lvec[:-1] + lvec[1:])
    deltas = nvec[1:] / lvec[1:] - nvec[:-1] / lvec[:-1]

    return weights, deltas


def _o1(lvec, nvec):

    k, L = len(lvec), lvec.sum()

    return k / (2 * L ** 2 * (k - 1)) * np.sum(np.diff(nvec) ** 2)


def _o2(lvec, nvec):

    k, L = len(lvec), lvec.sum()
    weights, deltas = _overlapping(lvec, nvec)

    return 2 * k / (L ** 2 * (k - 1)) * np.sum(weights ** 2 * deltas ** 2)


def _o3(lvec, nvec):

    k, L = len(lvec), lvec.sum()
    weights, deltas = _overlapping(lvec, nvec)

    return 1 / (L * (k - 1)) * np.sum(weights * deltas ** 2)


_Estimators = dict(R2=_r2, R3=_r3, R4=_r4, P2=_r2, P3=_r3, O1=_o1, O2=_o2, O3=_o3,
                   S1=lambda lv, nv: _stratified(lv, nv, _r2), S2=lambda lv, nv: _stratified(lv, nv, _r3))


def varn(lvec, nvec, type='R2'):

    """Variance of the encounter rate sum(nvec) / sum(lvec)

    Parameters:
    :param lvec: sample efforts (lengths, or visits for points)
    :param nvec: sample counts (or any per sample additive quantity, like abundance estimates)
    :param type: estimator name, see Estimators

    :returns: variance estimate (NaN with less than 2 samples)
    """

    assert type in _Estimators, 'Unknown encounter rate variance estimator {} ; should be one of {}' \
                                .format(type, Estimators)

    lvec = np.asarray(lvec, dtype=float)
    nvec = np.asarray(nvec, dtype=float)
    if len(lvec) < 2:
        return np.nan

    with np.errstate(divide='ignore', invalid='ignore'):
        return float(_Estimators[type](lvec, nvec))


def covn(lvec, nvec1, nvec2, type='R2'):

    """Covariance of 2 encounter rates on the same samples (polarised varn)"""

    nvec1 = np.asarray(nvec1, dtype=float)
    nvec2 = np.asarray(nvec2, dtype=float)

    return (varn(lvec, nvec1 + nvec2, type) - varn(lvec, nvec1, type) - varn(lvec, nvec2, type)) / 2


def varnDf(k, type='R2'):

    """Degrees of freedom of an encounter rate variance estimate from k samples"""

    if type in ['O1', 'O2', 'O3']:
        return k - 1
    if type in ['S1', 'S2']:
        strata = pairStrata(k)
        return int(sum(np.sum(strata == h) - 1 for h in np.unique(strata)))

    return k - 1
