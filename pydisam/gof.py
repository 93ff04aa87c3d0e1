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

# Submodule "gof": Goodness of fit tests for fitted detection models

import numpy as np
import pandas as pd
from scipy import stats

from . import log, utils
from . import integrate as intg

logger = log.logger('pds.gof')

# Capture history categories of the MR component, per configuration.
HistoryCats = dict(io=['10', '01', '11'], trial=['01', '11'], rem=['10', '01'])


def chi2Test(observed, expected, df):

    """Chi-square statistic and p-value (NaN if df <= 0)"""

    with np.errstate(divide='ignore', invalid='ignore'):
        chisq = np.where(expected > 0, (observed - expected) ** 2 / expected, 0.0)
    total = chisq.sum()

    return chisq, total, (stats.chi2.sf(total, df) if df > 0 else np.nan)


def defaultBreaks(model, nc=None):

    """Bin boundaries for chi-square tests: the fitting ones, or nc equal width bins (default sqrt(n))"""

    if model.breaks is not None:
        return np.asarray(model.breaks, dtype=float)

    nc = nc or max(int(round(np.sqrt(model.nObjects))), 2)

    return np.linspace(model.left, model.width, nc + 1)


def _binIndex(distances, breaks):

    idx = np.searchsorted(breaks, distances, side='right') - 1

    return np.clip(idx, 0, len(breaks) - 2)


def _binDistances(lnl):

    """Distances (bin middles for binned rows) of a likelihood's rows"""

    dists = lnl.distances.copy()
    if lnl.binned.any():
        dists[lnl.binned] = (lnl.binLower[lnl.binned] + lnl.binUpper[lnl.binned]) / 2

    return dists


def dsChi2(model, breaks):

    """Observed and expected counts of the distance distribution by bin

    :returns: DataFrame(distbegin, distend, observed, expected, chisq)
    """

    nBins = len(breaks) - 1

    if model.dsLikelihood is not None:
        lnl = model.dsLikelihood
        ddfo = model.ddfo
        totals = intg.integrateRows(ddfo, lnl.lower, lnl.upper, method=lnl.integration, nNodes=lnl.nNodes)
        binInts = [intg.integrateRows(ddfo, breaks[b], breaks[b + 1], method=lnl.integration, nNodes=lnl.nNodes)
                   for b in range(nBins)]
    else:
        lnl = model.mrLikelihood
        totals = lnl.integratedPdot(model.mrPar)
        binInts = [lnl.integratedPdot(model.mrPar, np.full(lnl.nObs, breaks[b]), np.full(lnl.nObs, breaks[b + 1]))
                   for b in range(nBins)]

    expected = np.array([np.sum(ints / totals) for ints in binInts])
    observed = np.bincount(_binIndex(_binDistances(lnl), breaks), minlength=nBins)[:nBins].astype(float)

    return pd.DataFrame(dict(distbegin=breaks[:-1], distend=breaks[1:], observed=observed, expected=expected))


def mrChi2(model, breaks):

    """Observed and expected capture history counts by distance bin

    :returns: DataFrame(distbegin, distend, history, observed, expected)
    """

    lnl = model.mrLikelihood
    p1, p2, pdot = lnl.probabilities(model.mrPar)
    d1, d2 = lnl.d1, lnl.d2

    if lnl.config == 'io':
        probs = {'10': p1 * (1 - p2) / pdot, '01': (1 - p1) * p2 / pdot, '11': p1 * p2 / pdot}
        obs = {'10': d1 * (1 - d2), '01': (1 - d1) * d2, '11': d1 * d2}
        rows = np.ones(lnl.nObs, dtype=bool)
    elif lnl.config == 'trial':
        probs = {'01': 1 - p1, '11': p1}
        obs = {'01': (1 - d1) * d2, '11': d1 * d2}
        rows = d2 == 1
    else:
        probs = {'10': p1 / pdot, '01': (1 - p1) * p2 / pdot}
        obs = {'10': d1, '01': (1 - d1) * d2}
        rows = np.ones(lnl.nObs, dtype=bool)

    binIdx = _binIndex(_binDistances(lnl), breaks)
    lRows = list()
    for b in range(len(breaks) - 1):
        inBin = rows & (binIdx == b)
        for hist in HistoryCats[lnl.config]:
            lRows.append(dict(distbegin=breaks[b], distend=breaks[b + 1], history=hist,
                              observed=float(obs[hist][inBin].sum()), expected=float(probs[hist][inBin].sum())))

    return pd.DataFrame(lRows)


def distanceTests(model):

    """Kolmogorov-Smirnov and Cramer-von Mises (unweighted) tests of the fitted distance distribution

    Only for exact distances with a DS component.
    :returns: DotDict(ks=DotDict(D, p), cvm=DotDict(W, p)), or None
    """

    lnl = model.dsLikelihood
    if lnl is None or lnl.binned.any():
        return None

    cdfValues = np.clip(intg.cdf(model.ddfo, lnl.distances, lnl.lower, lnl.upper,
                                 method=lnl.integration, nNodes=lnl.nNodes), 0, 1)

    ks = stats.kstest(cdfValues, 'uniform')
    cvm = stats.cramervonmises(cdfValues, 'uniform')

    return utils.DotDict(ks=utils.DotDict(D=ks.statistic, p=ks.pvalue),
                         cvm=utils.DotDict(W=cvm.statistic, p=cvm.pvalue))


def ddfGof(model, breaks=None, nc=None):

    """Goodness of fit of a fitted detection model

    Parameters:
    :param model: converged FittedModel
    :param breaks: bin boundaries for chi-square tests (default: see defaultBreaks)
    :param nc: number of equal width bins, when breaks not given and model not binned

    :returns: DotDict(dsTable, dsChi2, dsDf, dsP, mrTable, mrChi2, mrDf, mrP, chi2, df, p, distTests)
    """

    assert model.converged, 'No goodness of fit for a non converged model'

    breaks = np.asarray(breaks, dtype=float) if breaks is not None else defaultBreaks(model, nc)

    with utils.numericOptions():

        res = utils.DotDict(mrTable=None, mrChi2=np.nan, mrDf=0, mrP=np.nan)

        res.dsTable = dsChi2(model, breaks)
        nDsPars = model.nDsPars if model.dsLikelihood is not None else 0
        res.dsDf = len(res.dsTable) - 1 - nDsPars
        res.dsTable['chisq'], res.dsChi2, res.dsP = \
            chi2Test(res.dsTable.observed.values, res.dsTable.expected.values, res.dsDf)

        if model.mrLikelihood is not None:
            res.mrTable = mrChi2(model, breaks)
            nCats = len(HistoryCats[model.mrLikelihood.config])
            res.mrDf = (len(breaks) - 1) * (nCats - 1) - len(model.mrPar)
            res.mrTable['chisq'], res.mrChi2, res.mrP = \
                chi2Test(res.mrTable.observed.values, res.mrTable.expected.values, res.mrDf)

        res.chi2 = res.dsChi2 + (res.mrChi2 if res.mrTable is not None else 0.0)
        res.df = res.dsDf + res.mrDf
        res.p = stats.chi2.sf(res.chi2, res.df) if res.df > 0 else np.nan

        res.distTests = distanceTests(model)

    logger.info1('Goodness of fit: chi2={:.4g}, df={}, p={:.4g}'.format(res.chi2, res.df, res.p))

    return res
