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

# Submodule "dhtse": Variance of Horvitz-Thompson abundance estimates: detection (delta method)
#                    and encounter rate components, Satterthwaite degrees of freedom, confidence limits

import numpy as np
from scipy import stats

from . import log, utils
from .varn import varn, varnDf

logger = log.logger('pds.dse')


def DeltaMethod(par, fn, vcov, delta=0.001):

    """Variance of fn(par) through its numerical (central differences) derivatives

    Parameters:
    :param par: parameter vector
    :param fn: function(par) => 1D vector of estimates
    :param vcov: variance-covariance matrix of par
    :param delta: relative step (delta * par[i], or delta when par[i] == 0)

    :returns: DotDict(variance = J vcov J', partial = J) ; J = d fn / d par (nEstims, nPars)
    """

    par = np.asarray(par, dtype=float)
    theta = np.atleast_1d(fn(par))
    partial = np.zeros((len(theta), len(par)))
    for i in range(len(par)):
        step = delta * par[i] if par[i] != 0 else delta
        parP, parM = par.copy(), par.copy()
        parP[i] += step
        parM[i] -= step
        partial[:, i] = (np.atleast_1d(fn(parP)) - np.atleast_1d(fn(parM))) / (2 * step)

    return utils.DotDict(variance=partial @ vcov @ partial.T, partial=partial)


def satterthwaite(cv, cvs, dfs):

    """Satterthwaite degrees of freedom of a sum of variance components, from their cvs"""

    cvs, dfs = np.asarray(cvs, dtype=float), np.asarray(dfs, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        return cv ** 4 / np.sum(cvs ** 4 / dfs)


def logNormalFactor(cv, df=None, ciWidth=0.95):

    """Multiplicative half-width of log-normal confidence intervals (t with df, or normal if df is None)"""

    alpha = (1 - ciWidth) / 2
    with np.errstate(invalid='ignore'):
        quant = np.abs(stats.norm.ppf(alpha)) if df is None else np.abs(stats.t.ppf(alpha, df))
        return np.exp(quant * np.sqrt(np.log(1 + cv ** 2)))


def erVarianceComponent(tables, options, group):

    """Encounter rate variance component of the region (+ total) abundance estimates

    Parameters:
    :param tables: DotDict(regions, scale, dfNhatBySample, dfObs, nRegions) (see dht)
    :param options: dht options (varflag, ervar, ...)
    :param group: True for clusters (or no size), False for individuals

    :returns: tuple(vc2 matrix, vg matrix or None, group size stats per region (vars, sbar, ngroup) or None)
    """

    nRegions = tables.nRegions
    vc2 = np.zeros(nRegions)
    vg = None
    sizeStats = None
    densityOnly = tables.densityOnly

    dfObs = tables.dfObs
    weights = np.ones(len(dfObs)) if group else dfObs['size'].values
    binomial = (1 - dfObs.pdot.values) / dfObs.pdot.values ** 2 * weights ** 2

    if densityOnly or options.varflag == 0:

        for i, reg in enumerate(tables.regions):
            vc2[i] = binomial[(dfObs['Region.Label'] == reg).values].sum()
        if not densityOnly:
            vc2 = vc2 * tables.scale ** 2

    else:

        if not group:
            sizeStats = dict()
            vg = np.zeros(nRegions)
            for reg in tables.regions:
                sizes = dfObs.loc[dfObs['Region.Label'] == reg, 'size'].values
                ngroup = len(sizes)
                sizeStats[reg] = utils.DotDict(vars=np.var(sizes, ddof=1) / ngroup if ngroup > 1 else np.nan,
                                               sbar=sizes.mean() if ngroup else 0.0, ngroup=ngroup)

        for i, reg in enumerate(tables.regions):
            dfStrat = tables.dfNhatBySample[tables.dfNhatBySample['Region.Label'] == reg]
            Ni, Li = dfStrat.Nhat.sum(), dfStrat.Effort.sum()
            with np.errstate(divide='ignore', invalid='ignore'):
                if len(dfStrat) == 1:
                    vc2[i] = Ni ** 2 / (dfStrat.n.iloc[0] if options.varflag == 1 else Ni)
                elif options.varflag == 1:
                    vc2[i] = (Ni * Li) ** 2 * varn(dfStrat.Effort.values, dfStrat.n.values, options.ervar) \
                             / dfStrat.n.sum() ** 2
                    if not group:
                        sizeSt = sizeStats[reg]
                        vg[i] = Ni ** 2 * (0 if np.isnan(sizeSt.vars) else sizeSt.vars) / sizeSt.sbar ** 2
                else:
                    scale = tables.scale[i]
                    vc2[i] = varn(dfStrat.Effort.values / (scale * Li), dfStrat.Nhat.values / scale, options.ervar)

    vc2 = np.where(np.isnan(vc2), 0.0, vc2)
    if vg is not None:
        vg = np.where(np.isnan(vg), 0.0, vg)

    if nRegions > 1:
        vc2Mat = np.diag(np.append(vc2, vc2.sum()))
        vc2Mat[:nRegions, nRegions] = vc2
        vc2Mat[nRegions, :nRegions] = vc2
        vgMat = None if vg is None or options.varflag != 1 else np.diag(np.append(vg, vg.sum()))
    else:
        vc2Mat = np.diag(vc2)
        vgMat = None if vg is None or options.varflag != 1 else np.diag(vg)

    return vc2Mat, vgMat, sizeStats


def dhtSe(model, tables, estimates, estimatesFn, options, group):

    """Variance, degrees of freedom and confidence limits of region (+ total) abundance estimates

    Parameters:
    :param model: FittedModel
    :param tables: DotDict of dht intermediate tables (see erVarianceComponent)
    :param estimates: estimates vector (regions + total when more than 1 region)
    :param estimatesFn: function(par) => estimates vector (for the delta method)
    :param options: dht options
    :param group: True for clusters (or no size), False for individuals

    :returns: DotDict(se, cv, df, lcl, ucl, vc, vc1 (DotDict(variance, partial)), vc2)
    """

    nRegions = tables.nRegions
    nEstims = len(estimates)

    # Detection function component.
    if model.vcov is not None and model.nPars > 0:
        vc1 = DeltaMethod(model.par, estimatesFn, model.vcov, options.pdelta)
    else:
        vc1 = utils.DotDict(variance=np.zeros((nEstims, nEstims)), partial=None)

    # Encounter rate (and group size) component.
    vc2, vg, sizeStats = erVarianceComponent(tables, options, group)

    vc = vc1.variance + vc2
    if vg is not None:
        vc = vc + vg

    with np.errstate(divide='ignore', invalid='ignore'):

        se = np.sqrt(np.diag(vc))
        cv = se / estimates

        if options.varflag != 0:

            dfs = np.maximum(np.array([varnDf(k, options.ervar) for k in tables.k]), 1)
            nDetDf = model.nObjects - model.nPars
            vc1Null = np.isnan(vc1.variance).any() or (vc1.variance == 0).all()
            if vc1Null:
                df = dfs.astype(float)
            else:
                df = np.empty(nEstims)
                for i, reg in enumerate(tables.regions):
                    cvs = [np.sqrt(vc1.variance[i, i]) / estimates[i], np.sqrt(vc2[i, i]) / estimates[i]]
                    dfCvs = [nDetDf, dfs[i]]
                    if vg is not None:
                        cvs.append(np.sqrt(sizeStats[reg].vars) / sizeStats[reg].sbar)
                        dfCvs.append(sizeStats[reg].ngroup - 1)
                    df[i] = satterthwaite(cv[i], cvs, dfCvs)

            if nRegions > 1:
                v2 = np.diag(vc2)
                dfTotal = v2[nRegions] ** 2 / np.sum(v2[:nRegions] ** 2 / dfs[:nRegions])
                if vc1Null:
                    df[nRegions] = dfTotal
                else:
                    cvs = [np.sqrt(vc1.variance[nRegions, nRegions]) / estimates[nRegions],
                           np.sqrt(v2[nRegions]) / estimates[nRegions]]
                    dfCvs = [nDetDf, dfTotal]
                    if vg is not None:
                        cvs.append(np.sqrt(vg[nRegions, nRegions]) / estimates[nRegions])
                        dfCvs.append(model.nObjects - 1)
                    df[nRegions] = satterthwaite(cv[nRegions], cvs, dfCvs)

            df = np.where((df > 0) & (df < 1), 1.0, df)
            factor = logNormalFactor(cv, df, options.ciWidth)

        else:

            df = np.zeros(nEstims)
            factor = logNormalFactor(cv, None, options.ciWidth)

        lcl, ucl = estimates / factor, estimates * factor

    return utils.DotDict(se=se, cv=cv, df=df, lcl=lcl, ucl=ucl, vc=vc, vc1=vc1, vc2=vc2, vg=vg)
