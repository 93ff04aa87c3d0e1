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

# Submodule "dht": Horvitz-Thompson abundance and density estimation, by region and in total

import numpy as np
import pandas as pd

from . import log, utils
from .data import SurveyTables
from .dhtse import dhtSe
from .diagnostics import Diagnostics, SurveyDataError
from .varn import varn, covn, LineEstimators, PointEstimators

logger = log.logger('pds.dht')

# Default values of abundance estimation options.
DefOptions = dict(ciWidth=0.95, convertUnits=1, varflag=2, ervar=None, areasSupplied=False, pdelta=0.001)

RegCol = SurveyTables.RegCol
SampCol = SurveyTables.SampCol


class DHTResult(object):

    """Abundance / density estimation results

    Attributes:
    * individuals: DotDict of tables (bysample, summary, N, D, averageP, cormat, vc, NhatBySample),
      for individuals when sizes are available, otherwise for the detected objects,
    * clusters: same, for clusters (None when no size),
    * expectedS: expected cluster size table (None when no size),
    * erVar: tuple(encounter rate variance estimator, varflag == 2, varflag == 0),
    * densityOnly: True when all region areas are 0 (N tables are None then),
    * diagnostics: Diagnostics.
    """

    def __init__(self, individuals, clusters=None, expectedS=None, erVar=None, densityOnly=False,
                 diagnostics=None):

        self.individuals = individuals
        self.clusters = clusters
        self.expectedS = expectedS
        self.erVar = erVar
        self.densityOnly = densityOnly
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    def __repr__(self):

        tbl = self.individuals.D if self.densityOnly else self.individuals.N
        what = 'Density' if self.densityOnly else 'Abundance'

        return f'{what} estimates:\n{tbl}'


def _zeroNaN(values):

    values = np.asarray(values, dtype=float)

    return np.where(np.isfinite(values), values, 0.0)


def _estimateTable(labels, estimates, seRes=None):

    dfTable = pd.DataFrame(dict(Label=labels, Estimate=_zeroNaN(estimates)))
    for col in ['se', 'cv', 'lcl', 'ucl', 'df']:
        dfTable[col] = _zeroNaN(seRes[col]) if seRes is not None else np.nan

    return dfTable


def _surveyTables(model, structure, options, width, left):

    """Samples and regions with covered areas and region scales

    :returns: tuple(samples DataFrame (+ Area, CoveredArea, RegCoveredArea), regions DataFrame (+ CoveredArea))
    """

    dfSamples = structure.dfSamples.merge(structure.dfRegions, on=RegCol, how='left')

    if options.areasSupplied:
        if 'CoveredArea' not in dfSamples.columns:
            raise SurveyDataError('CoveredArea must be in sample table when areas supplied')
    elif model.point:
        dfSamples['CoveredArea'] = np.pi * dfSamples.Effort * (width ** 2 - left ** 2)
    else:
        dfSamples['CoveredArea'] = 2 * dfSamples.Effort * (width - left)

    dfRegions = structure.dfRegions.copy()
    dfRegions['CoveredArea'] = dfSamples.groupby(RegCol).CoveredArea.sum().reindex(dfRegions[RegCol]).values
    dfRegions['Effort'] = dfSamples.groupby(RegCol).Effort.sum().reindex(dfRegions[RegCol]).values

    if structure.densityOnly:
        dfRegions['Area'] = dfRegions.CoveredArea

    dfSamples = dfSamples.drop(columns=['Area']).merge(dfRegions[[RegCol, 'Area']], on=RegCol, how='left')
    dfSamples['RegCoveredArea'] = dfSamples[RegCol].map(dict(zip(dfRegions[RegCol], dfRegions.CoveredArea)))

    return dfSamples, dfRegions


def _nhatBySample(dfObs, pdot, dfSamples, group):

    """Covered abundance (sum(1/p) or sum(size/p)) and count by sample, then scaled to the regions"""

    dfObs = dfObs.assign(pdot=pdot)
    dfObs['nhat'] = (1.0 if group else dfObs['size']) / dfObs.pdot
    dfAgg = dfObs.groupby([RegCol, SampCol]).agg(n=('object', 'count'), Nhat=('nhat', 'sum')).reset_index()

    dfNhat = dfSamples.merge(dfAgg, on=[RegCol, SampCol], how='left')
    dfNhat['n'] = dfNhat.n.fillna(0).astype(int)
    dfNhat['NhatCovered'] = dfNhat.Nhat.fillna(0.0)
    with np.errstate(divide='ignore', invalid='ignore'):
        dfNhat['Nhat'] = dfNhat.NhatCovered * dfNhat.Area / dfNhat.RegCoveredArea

    return dfNhat


def _regionEstimates(dfNhat, regions):

    byReg = dfNhat.groupby(RegCol).Nhat.sum().reindex(regions).fillna(0.0).values

    return np.append(byReg, byReg.sum()) if len(regions) > 1 else byReg


def _summaryTable(dfNhat, dfRegions, dfObs, options, group):

    regions = list(dfRegions[RegCol])
    nRegions = len(regions)

    dfSum = dfRegions[[RegCol, 'Area', 'CoveredArea', 'Effort']].rename(columns={RegCol: 'Region'})
    dfSum['n'] = dfNhat.groupby(RegCol).n.sum().reindex(regions).fillna(0).astype(int).values
    dfSum['k'] = dfNhat.groupby(RegCol)[SampCol].count().reindex(regions).fillna(0).astype(int).values

    varEr = np.array([varn(dfNhat.loc[dfNhat[RegCol] == reg, 'Effort'].values,
                           dfNhat.loc[dfNhat[RegCol] == reg, 'n'].values, options.ervar) for reg in regions])
    with np.errstate(divide='ignore', invalid='ignore'):
        er = dfSum.n.values / dfSum.Effort.values
        if nRegions > 1:
            areas = dfSum.Area.values
            totRow = dict(Region='Total', Area=areas.sum(), CoveredArea=dfSum.CoveredArea.sum(),
                          Effort=dfSum.Effort.sum(), n=dfSum.n.sum(), k=dfSum.k.sum())
            dfSum = pd.concat([dfSum, pd.DataFrame([totRow])], ignore_index=True)
            er = np.append(er, np.sum(er * areas) / areas.sum())
            varEr = np.append(varEr, np.sum(varEr * areas ** 2) / areas.sum() ** 2)
        seEr = np.sqrt(varEr)
        cvEr = np.where(er == 0, 0.0, seEr / er)

    dfSum['ER'] = _zeroNaN(er)
    dfSum['se.ER'] = _zeroNaN(seEr)
    dfSum['cv.ER'] = _zeroNaN(cvEr)

    if not group:
        sizeStats = list()
        for reg in regions:
            sizes = dfObs.loc[dfObs[RegCol] == reg, 'size'].values
            sizeStats.append((sizes.mean() if len(sizes) else np.nan,
                              np.sqrt(np.var(sizes, ddof=1) / len(sizes)) if len(sizes) > 1 else np.nan))
        if nRegions > 1:
            sizes = dfObs['size'].values
            sizeStats.append((sizes.mean(), np.sqrt(np.var(sizes, ddof=1) / len(sizes)) if len(sizes) > 1
                              else np.nan))
        dfSum['mean.size'] = _zeroNaN([mean for mean, _ in sizeStats])
        dfSum['se.mean'] = _zeroNaN([se for _, se in sizeStats])

    return dfSum


def dht(model, regionTable, sampleTable, obsTable=None, subset=None, se=True, options=None):

    """Horvitz-Thompson abundance (and density) estimation from a fitted detection model

    Parameters:
    :param model: converged ddf.FittedModel
    :param regionTable: DataFrame with Region.Label and Area columns
    :param sampleTable: DataFrame with Region.Label, Sample.Label, Effort (and CoveredArea) columns
    :param obsTable: DataFrame with object, Region.Label and Sample.Label columns ;
                     None => built from the fitting data
    :param subset: pandas query string for selecting the fitting data rows to use (only when obsTable is None)
    :param se: if True, compute variances, confidence limits and correlations
    :param options: dict or DotDict of options (see DefOptions)

    :returns: DHTResult
    :raises SurveyDataError: on inconsistent survey structure or options
    """

    assert model.converged and model.fitted is not None, 'Abundance estimation needs a converged model'

    options = utils.assignDefaults(options, **DefOptions)
    diagnostics = Diagnostics()

    if options.ervar is None:
        options.ervar = 'P2' if model.point else 'R2'
    if options.ervar in PointEstimators and not model.point:
        raise SurveyDataError('Encounter rate variance estimator P2 / P3 may only be used with point transects')
    if model.point and options.ervar not in PointEstimators:
        diagnostics.append('Point transect encounter rate variance can only use estimators P2 or P3,'
                           ' switching to P2', head='dht')
        options.ervar = 'P2'
    assert options.ervar in LineEstimators + PointEstimators, f'Unknown estimator {options.ervar}'

    # Observation table.
    dfObjects = model.dfObjects.assign(pdot=model.fitted)
    if obsTable is None:
        dfData = dfObjects if subset is None else dfObjects.query(subset)
        obsTable = SurveyTables.obsTableFromData(dfData)
    elif not pd.api.types.is_numeric_dtype(obsTable.object):
        raise SurveyDataError('Please ensure the object field in the observation table is numeric')

    with utils.numericOptions():

        structure = SurveyTables(regionTable, sampleTable, obsTable, diagnostics=diagnostics)
        if structure.densityOnly:
            logger.info1('All region areas are 0: density only estimation')

        # Link observations to their detection probability (and size), in fitted objects order.
        objIdx = pd.Series(np.arange(len(dfObjects)), index=dfObjects.object.values)
        dfObs = structure.dfObs[structure.dfObs.object.isin(objIdx.index)].reset_index(drop=True)
        obsRows = objIdx.loc[dfObs.object.values].values
        dfObs['pdot'] = model.fitted[obsRows]
        dfObs['size'] = dfObjects['size'].values[obsRows] if 'size' in dfObjects.columns else 1.0

        width = model.width * options.convertUnits
        left = model.left * options.convertUnits
        dfSamples, dfRegions = _surveyTables(model, structure, options, width, left)
        regions = list(dfRegions[RegCol])
        nRegions = len(regions)
        labels = regions + ['Total'] if nRegions > 1 else ['Total']
        areas = dfRegions.Area.values
        scale = areas / dfRegions.CoveredArea.values

        def tables(group):

            dfNhat = _nhatBySample(dfObs, dfObs.pdot.values, dfSamples, group)
            estimates = _regionEstimates(dfNhat, regions)

            res = utils.DotDict()
            # n / Nhat in the covered region (clusters or individuals)
            nhatCovered = dfNhat.NhatCovered.sum()
            res.averageP = dfNhat.n.sum() / nhatCovered if nhatCovered > 0 else 0.0

            with np.errstate(divide='ignore', invalid='ignore'):
                res.bysample = pd.DataFrame({'Region': dfNhat[RegCol], 'Area': dfNhat.Area,
                                             'Sample': dfNhat[SampCol], 'Effort': dfNhat.Effort,
                                             'Sample.Area': dfNhat.CoveredArea, 'n': dfNhat.n,
                                             'Nhat': dfNhat.NhatCovered,
                                             'Dhat': dfNhat.NhatCovered / dfNhat.CoveredArea})
            res.summary = _summaryTable(dfNhat, dfRegions, dfObs, options, group)
            res.NhatBySample = dfNhat

            seRes = None
            if se:

                def estimatesFn(par):
                    pdot = model.fittedAt(par)[obsRows]
                    return _regionEstimates(_nhatBySample(dfObs, pdot, dfSamples, group), regions)

                tbls = utils.DotDict(regions=regions, nRegions=nRegions, scale=scale, dfNhatBySample=dfNhat,
                                     dfObs=dfObs, densityOnly=structure.densityOnly,
                                     k=list(res.summary.k.values))
                seRes = dhtSe(model, tbls, estimates, estimatesFn, options, group)

            res.N = _estimateTable(labels, estimates, seRes)
            allAreas = np.append(areas, areas.sum()) if nRegions > 1 else areas
            res.D = res.N.copy()
            with np.errstate(divide='ignore', invalid='ignore'):
                for col in ['Estimate', 'se', 'lcl', 'ucl']:
                    res.D[col] = _zeroNaN(res.N[col].values / allAreas)

            if se:
                with np.errstate(divide='ignore', invalid='ignore'):
                    res.cormat = _zeroNaN(seRes.vc / np.outer(seRes.se, seRes.se))
                res.vc = utils.DotDict(total=seRes.vc, detection=seRes.vc1, er=seRes.vc2)
                res.seRes = seRes
            else:
                res.cormat, res.vc, res.seRes = None, None, None

            return res

        clusters, expectedS = None, None
        if 'size' in model.dfObjects.columns:

            clusters = tables(group=True)
            individuals = tables(group=False)

            with np.errstate(divide='ignore', invalid='ignore'):
                expS = _zeroNaN(individuals.N.Estimate.values / clusters.N.Estimate.values)
            expectedS = pd.DataFrame(dict(Region=labels, ExpectedS=expS))

            if se and options.varflag != 1:

                if options.varflag == 2:
                    covs = list()
                    for i, reg in enumerate(regions):
                        cStrat = clusters.NhatBySample[clusters.NhatBySample[RegCol] == reg]
                        iStrat = individuals.NhatBySample[individuals.NhatBySample[RegCol] == reg]
                        Li = cStrat.Effort.sum()
                        covs.append(covn(cStrat.Effort.values / (scale[i] * Li), cStrat.Nhat.values / scale[i],
                                         iStrat.Nhat.values / scale[i], options.ervar))
                    covs = np.array(covs)
                else:
                    binomial = dfObs['size'].values * (1 - dfObs.pdot.values) / dfObs.pdot.values ** 2
                    covs = np.array([binomial[(dfObs[RegCol] == reg).values].sum() for reg in regions])
                covs = _zeroNaN(covs)
                if nRegions > 1:
                    covs = np.append(covs, covs.sum())

                cPartial, iPartial = clusters.vc.detection.partial, individuals.vc.detection.partial
                if model.vcov is not None and cPartial is not None:
                    covs = covs + np.diag(cPartial @ model.vcov @ iPartial.T)

                with np.errstate(divide='ignore', invalid='ignore'):
                    relVar = clusters.N.cv.values ** 2 + individuals.N.cv.values ** 2 \
                             - 2 * covs / (individuals.N.Estimate.values * clusters.N.Estimate.values)
                relVar = np.where((relVar <= 0) | np.isnan(relVar), 0.0, relVar)
                expectedS['se.ExpectedS'] = expS * np.sqrt(relVar)

            if structure.densityOnly:
                clusters.N = None

        else:
            individuals = tables(group=True)

        if structure.densityOnly:
            individuals.N = None

    # Single sample strata.
    dfSum = individuals.summary
    single = dfSum.loc[(dfSum.k == 1) & (dfSum.Region != 'Total'), 'Region'] if nRegions > 1 \
             else dfSum.loc[dfSum.k == 1, 'Region']
    if len(single) and options.varflag in [1, 2]:
        assumed = 'variance of n is Poisson' if options.varflag == 1 \
                  else 'abundance in the covered region is Poisson'
        if nRegions == 1:
            diagnostics.append(f'Only one sample, assuming {assumed}', head='dht')
        else:
            diagnostics.append('Only one sample in the following strata: {} ; for these, it is assumed {}'
                               .format(', '.join(str(reg) for reg in single), assumed), head='dht')

    result = DHTResult(individuals, clusters=clusters, expectedS=expectedS,
                       erVar=(options.ervar, options.varflag == 2, options.varflag == 0),
                       densityOnly=structure.densityOnly, diagnostics=diagnostics)

    logger.info1(f'{result}')

    return result
