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

# Automated unit and integration tests for "dht" and "dhtse" submodules (abundance estimation)

# To run : simply run "pytest" and check standard output + ./tmp/pytest.{datetime}.log for details

import numpy as np
import pandas as pd

import pytest

import pydisam as pds
from pydisam import dhtse

import unintval_utils as uivu


# Mark module
pytestmark = pytest.mark.unintests

# Setup local logger.
logger = uivu.setupLogger('unt.dht', level=pds.DEBUG, otherLoggers={'pds': pds.INFO, 'pds.opr': pds.INFO})

KWhat2Test = 'abundance estimation'


###############################################################################
#                         Actions to be done before any test                  #
###############################################################################
def testBegin():
    uivu.logBegin(what=KWhat2Test)


###############################################################################
#                                Test Cases                                   #
###############################################################################
KWidth = 0.3
KAreas = dict(A=100.0, B=50.0)


@pytest.fixture(scope='module')
def survey_fxt():

    dfObs, dfRegions, dfSamples = \
        uivu.lineSurvey(regions={reg: (area, 10 if reg == 'A' else 8) for reg, area in KAreas.items()},
                        effort=1.0, density=100.0, sigma=0.1, width=KWidth, sizes=True, seed=3)
    model = pds.fitDS(dfObs, pds.DetectionFunctionSpec(key='hn'), meta=dict(width=KWidth))

    return dfObs, dfRegions, dfSamples, model


def testDeltaMethodAndHelpers():

    # Linear function => exact variance
    vcov = np.array([[1.0, 0.2], [0.2, 2.0]])
    res = dhtse.DeltaMethod(np.array([1.0, 0.0]), lambda par: np.array([2 * par[0] + par[1], par[1]]), vcov)
    jac = np.array([[2.0, 1.0], [0.0, 1.0]])
    assert res.partial == pytest.approx(jac)
    assert res.variance == pytest.approx(jac @ vcov @ jac.T)

    # Satterthwaite: single component => its own df
    assert dhtse.satterthwaite(0.2, [0.2, 0.0], [10, 5]) == pytest.approx(10)

    # Log-normal CI factor
    cv = 0.1
    assert dhtse.logNormalFactor(cv) == pytest.approx(np.exp(1.959964 * np.sqrt(np.log(1 + cv ** 2))), rel=1e-6)
    assert dhtse.logNormalFactor(cv, df=5) > dhtse.logNormalFactor(cv)

    logger.info0('PASS testDeltaMethodAndHelpers')


def testAbundanceStrata(survey_fxt):

    dfObs, dfRegions, dfSamples, model = survey_fxt

    res = pds.dht(model, dfRegions, dfSamples)
    logger.info(f'Results: {res}')

    assert res.erVar == ('R2', True, False)
    assert not res.densityOnly

    for level in [res.clusters, res.individuals]:

        dfN, dfD = level.N, level.D
        assert dfN.Label.tolist() == ['A', 'B', 'Total']

        # Strata additivity
        assert dfN.Estimate.iloc[2] == pytest.approx(dfN.Estimate.iloc[0] + dfN.Estimate.iloc[1])
        assert dfD.Estimate.values == pytest.approx(dfN.Estimate.values / np.array([100.0, 50.0, 150.0]))

        # Variances, confidence limits, correlations
        assert (dfN.se > 0).all() and (dfN.df >= 1).all()
        assert (dfN.lcl < dfN.Estimate).all() and (dfN.Estimate < dfN.ucl).all()
        assert np.diag(level.cormat) == pytest.approx(np.ones(3))
        assert level.vc.total[2, 2] == pytest.approx(dfN.se.iloc[2] ** 2)

    # Horvitz-Thompson: covered abundance = sum(1 / p)
    bySamp = res.clusters.bysample
    assert bySamp.Nhat.sum() == pytest.approx(model.Nhat)
    assert bySamp.n.sum() == len(dfObs)
    nhatA = bySamp.loc[bySamp.Region == 'A', 'Nhat'].sum()
    assert res.clusters.N.Estimate.iloc[0] == pytest.approx(nhatA * 100.0 / (2 * 10 * 1.0 * KWidth))

    # Individuals = sum(size / p)
    assert res.individuals.bysample.Nhat.sum() == pytest.approx(np.sum(model.dfObjects['size'].values / model.fitted))

    # Simulated density: 100 clusters per area unit
    assert res.clusters.D.Estimate.iloc[2] == pytest.approx(100.0, rel=0.3)

    # Expected cluster size
    expS = res.expectedS
    assert expS.ExpectedS.values == pytest.approx(res.individuals.N.Estimate.values
                                                  / res.clusters.N.Estimate.values)
    assert (expS['se.ExpectedS'] > 0).all()

    # Summary table
    dfSum = res.clusters.summary
    assert dfSum.Region.tolist() == ['A', 'B', 'Total']
    assert dfSum.k.tolist() == [10, 8, 18]
    assert dfSum.n.iloc[2] == len(dfObs)
    assert dfSum.ER.iloc[0] == pytest.approx(dfSum.n.iloc[0] / 10.0)
    assert 'mean.size' in res.individuals.summary.columns

    assert 0 < res.clusters.averageP < 1
    assert res.clusters.averageP == pytest.approx(len(dfObs) / model.Nhat)

    # ... for individuals: n / estimated individuals in the covered region (smaller, as sizes >= 1)
    nIndivCovered = np.sum(model.dfObjects['size'].values / model.fitted)
    assert res.individuals.averageP == pytest.approx(len(dfObs) / nIndivCovered)
    assert res.individuals.averageP < res.clusters.averageP

    logger.info0('PASS testAbundanceStrata')


def testUnitsAndVarianceOptions(survey_fxt):

    dfObs, dfRegions, dfSamples, model = survey_fxt

    res1 = pds.dht(model, dfRegions, dfSamples)
    res2 = pds.dht(model, dfRegions, dfSamples, options=dict(convertUnits=2.0))

    # Covered area doubled => abundance halved, same cv
    assert res2.clusters.N.Estimate.values == pytest.approx(res1.clusters.N.Estimate.values / 2)
    assert res2.clusters.N.cv.values == pytest.approx(res1.clusters.N.cv.values)

    # Other encounter rate variance options
    res0 = pds.dht(model, dfRegions, dfSamples, options=dict(varflag=0))
    assert res0.erVar == ('R2', False, True)
    assert (res0.clusters.N.df == 0).all()
    assert res0.clusters.N.Estimate.values == pytest.approx(res1.clusters.N.Estimate.values)

    resV1 = pds.dht(model, dfRegions, dfSamples, options=dict(varflag=1, ervar='R3'))
    assert resV1.erVar == ('R3', False, False)
    assert (resV1.individuals.N.se > 0).all()

    resO = pds.dht(model, dfRegions, dfSamples, options=dict(ervar='O2'))
    assert (resO.clusters.N.se > 0).all()

    # No variance
    resNoSe = pds.dht(model, dfRegions, dfSamples, se=False)
    assert resNoSe.clusters.N.se.isnull().all() and resNoSe.clusters.vc is None

    logger.info0('PASS testUnitsAndVarianceOptions')


def testDensityOnly(survey_fxt):

    dfObs, dfRegions, dfSamples, model = survey_fxt

    res = pds.dht(model, dfRegions.assign(Area=0.0), dfSamples)

    assert res.densityOnly
    assert res.individuals.N is None and res.clusters.N is None

    nhat = res.clusters.bysample.groupby('Region').Nhat.sum()
    coveredA, coveredB = 2 * 10 * KWidth, 2 * 8 * KWidth
    dfD = res.clusters.D
    assert dfD.Estimate.iloc[0] == pytest.approx(nhat['A'] / coveredA)
    assert dfD.Estimate.iloc[2] == pytest.approx((nhat['A'] + nhat['B']) / (coveredA + coveredB))
    assert (dfD.se > 0).all()

    logger.info0('PASS testDensityOnly')


def testSingleSample():

    dfObs, dfRegions, dfSamples = uivu.lineSurvey(regions=dict(A=(10.0, 1)), effort=2.0, density=300.0,
                                                  sigma=0.1, width=KWidth, seed=8)
    model = pds.fitDS(dfObs, pds.DetectionFunctionSpec(key='hn'), meta=dict(width=KWidth))

    res = pds.dht(model, dfRegions, dfSamples)

    assert res.diagnostics.contains('Only one sample')
    assert res.expectedS is None and res.clusters is None
    dfN = res.individuals.N
    assert dfN.Label.tolist() == ['Total']
    # Poisson abundance in the covered region: var = N^2 / N
    assert res.individuals.vc.er[0, 0] == pytest.approx(dfN.Estimate.iloc[0])

    logger.info0('PASS testSingleSample')


def testObservationTables(survey_fxt):

    dfObs, dfRegions, dfSamples, model = survey_fxt

    # Explicit observation table = same results
    dfObsTab = dfObs[['object', 'Region.Label', 'Sample.Label']]
    res1 = pds.dht(model, dfRegions, dfSamples)
    res2 = pds.dht(model, dfRegions, dfSamples, obsTable=dfObsTab)
    assert res2.clusters.N.Estimate.values == pytest.approx(res1.clusters.N.Estimate.values)

    # Subset of the fitting data
    res3 = pds.dht(model, dfRegions, dfSamples, subset='`Region.Label` == "A"')
    assert res3.clusters.N.Estimate.iloc[0] == pytest.approx(res1.clusters.N.Estimate.iloc[0])
    assert res3.clusters.N.Estimate.iloc[1] == 0

    # Observations out of any sample are dropped
    dfBadTab = dfObsTab.copy()
    dfBadTab.loc[dfBadTab.index[0], 'Sample.Label'] = 999
    res4 = pds.dht(model, dfRegions, dfSamples, obsTable=dfBadTab)
    assert res4.diagnostics.contains('not linked to any sample')
    assert res4.clusters.summary.n.iloc[2] == len(dfObs) - 1

    # Errors
    with pytest.raises(pds.SurveyDataError):
        pds.dht(model, dfRegions, dfSamples, obsTable=dfObsTab.assign(object=dfObsTab.object.astype(str)))
    with pytest.raises(pds.SurveyDataError):
        pds.dht(model, dfRegions, dfSamples, options=dict(ervar='P2'))
    with pytest.raises(pds.SurveyDataError):
        pds.dht(model, dfRegions.assign(Area=-1.0), dfSamples)
    with pytest.raises(pds.SurveyDataError):
        pds.dht(model, dfRegions, dfSamples.assign(**{'Region.Label': 'C'}))

    modelNoGeo = pds.fitDS(dfObs[['object', 'distance']], pds.DetectionFunctionSpec(key='hn'),
                           meta=dict(width=KWidth))
    with pytest.raises(pds.SurveyDataError, match='Must specify an observation table'):
        pds.dht(modelNoGeo, dfRegions, dfSamples)

    logger.info0('PASS testObservationTables')


def testPointTransects():

    dfObs = uivu.halfNormalObs(600, 1.0, 2.5, point=True, seed=9)
    dfObs['Region.Label'] = 'A'
    dfObs['Sample.Label'] = dfObs.object % 6 + 1
    dfRegions = pd.DataFrame({'Region.Label': ['A'], 'Area': [1000.0]})
    dfSamples = pd.DataFrame({'Region.Label': 'A', 'Sample.Label': range(1, 7), 'Effort': 1.0})

    model = pds.fitDS(dfObs, pds.DetectionFunctionSpec(key='hn'), meta=dict(width=2.5, point=True))

    # Line estimator with points => P2
    res = pds.dht(model, dfRegions, dfSamples, options=dict(ervar='R2'))
    assert res.diagnostics.contains('switching to P2')
    assert res.erVar[0] == 'P2'

    covered = np.pi * 6 * 2.5 ** 2
    assert res.individuals.N.Estimate.iloc[0] == pytest.approx(model.Nhat * 1000.0 / covered)
    assert res.individuals.summary.CoveredArea.iloc[0] == pytest.approx(covered)

    logger.info0('PASS testPointTransects')


###############################################################################
#                         Actions to be done after all tests                  #
###############################################################################
def testEnd():
    uivu.logEnd(what=KWhat2Test)
