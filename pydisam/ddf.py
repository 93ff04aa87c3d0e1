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

# Submodule "ddf": Detection function fitting methods, fitted models, monotonicity check and model selection

from collections import namedtuple as ntuple

import numpy as np
import pandas as pd
from scipy import linalg

from . import log, utils
from . import integrate as intg
from .data import ObservationSet
from .detfunc import DetectionFunction, uniqueRows
from .diagnostics import Diagnostics, FittingError, SurveyDataError
from .likelihood import DSLikelihood, FILikelihood
from .optimiser import DefControl, DetFnOptimiser, Problem, Solution, \
                       computeHessian, monotonicityConstraints, parameterScales, solveCov

logger = log.logger('pds.ddf')

# Detection function fitting methods, and what they need / assume.
DDFMethod = ntuple('DDFMethod', ['name', 'needsDs', 'needsMr', 'doubleObserver', 'fullIndependence', 'config'])

Methods = {meth.name: meth for meth in
           [DDFMethod('ds', needsDs=True, needsMr=False, doubleObserver=False, fullIndependence=False, config=None),
            DDFMethod('io', needsDs=True, needsMr=True, doubleObserver=True, fullIndependence=False, config='io'),
            DDFMethod('io.fi', needsDs=False, needsMr=True, doubleObserver=True, fullIndependence=True,
                      config='io'),
            DDFMethod('trial', needsDs=True, needsMr=True, doubleObserver=True, fullIndependence=False,
                      config='trial'),
            DDFMethod('trial.fi', needsDs=False, needsMr=True, doubleObserver=True, fullIndependence=True,
                      config='trial'),
            DDFMethod('rem', needsDs=True, needsMr=True, doubleObserver=True, fullIndependence=False,
                      config='rem'),
            DDFMethod('rem.fi', needsDs=False, needsMr=True, doubleObserver=True, fullIndependence=True,
                      config='rem')]}

# Default values of meta data options.
DefMeta = dict(point=False, width=None, left=0, binned=False, breaks=None, intRange=None,
               mono=False, monoStrict=False)


class FittedModel(object):

    """Result of a detection function fit ; never modified after construction

    Parameter vector: DS block [shape | scale | adjustment] (if any) followed by the MR block (if any).
    Fitted detection probabilities, covered abundance and parameter variances are only available
    for converged fits.
    """

    def __init__(self, method, meta, par=None, parNames=(), lnl=np.nan, hessian=None, hessianKind=None,
                 converged=False, message='', optimizer=None, dfObjects=None, pdotFunc=None,
                 dsLikelihood=None, mrLikelihood=None, nDsPars=0, monoCheck=None,
                 estimate=True, valid=True, diagnostics=None):

        """Ctor

        Parameters:
        :param method: DDFMethod
        :param meta: DotDict of meta data options (see DefMeta), with width resolved
        :param par: fitted parameter vector
        :param parNames: parameter names
        :param lnl: maximised log-likelihood
        :param hessian: Hessian matrix (of the negative log-likelihood) or None
        :param hessianKind: 'first' or 'second' (partial), or None
        :param converged: optimisation convergence status
        :param message: optimiser message
        :param optimizer: name of the backend that produced the retained solution
        :param dfObjects: 1 row per counted object (object, size, geographic columns, ...)
        :param pdotFunc: function(par) => per counted object detection probability
        :param dsLikelihood: DSLikelihood of the DS component (if any)
        :param mrLikelihood: FILikelihood of the MR component (if any)
        :param nDsPars: number of DS parameters (first ones in par)
        :param monoCheck: monotonicity check result (None if not done)
        :param estimate: if False, no covered abundance computed
        :param valid: False for failed fits returned in debug mode
        :param diagnostics: Diagnostics of the fit
        """

        self.method = method
        self.meta = meta
        self.par = np.array([] if par is None else par, dtype=float)
        self.par.flags.writeable = False
        self.parNames = list(parNames)
        self.lnl = lnl
        self.hessian = hessian
        self.hessianKind = hessianKind
        self.converged = converged
        self.message = message
        self.optimizer = optimizer
        self.dfObjects = dfObjects
        self.pdotFunc = pdotFunc
        self.dsLikelihood = dsLikelihood
        self.mrLikelihood = mrLikelihood
        self.nDsPars = nDsPars
        self.monoCheck = monoCheck
        self.valid = valid
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()

        self.vcov = solveCov(hessian) if valid and converged and hessian is not None else None

        self.fitted = None
        self.Nhat = None
        if valid and converged:
            self.fitted = self.fittedAt(self.par)
            self.fitted.flags.writeable = False
            if estimate:
                self.Nhat = self.NCovered()
        elif valid:
            self.diagnostics.append('Model fitting did not converge ; no fitted values nor abundance', head='fit')

    @property
    def width(self):

        return self.meta.width

    @property
    def left(self):

        return self.meta.left

    @property
    def point(self):

        return self.meta.point

    @property
    def binned(self):

        return self.meta.binned

    @property
    def breaks(self):

        return self.meta.breaks

    @property
    def nPars(self):

        return len(self.par)

    @property
    def nObjects(self):

        return 0 if self.dfObjects is None else len(self.dfObjects)

    @property
    def aic(self):

        return -2 * self.lnl + 2 * self.nPars

    @property
    def se(self):

        return None if self.vcov is None else np.sqrt(np.clip(np.diag(self.vcov), 0, None))

    @property
    def dsPar(self):

        return self.par[:self.nDsPars]

    @property
    def mrPar(self):

        return self.par[self.nDsPars:]

    @property
    def ddfo(self):

        """The fitted DetectionFunction (None for full independence methods)"""

        return None if self.dsLikelihood is None else self.dsLikelihood.ddfo.withParams(self.dsPar)

    def fittedAt(self, par):

        """Per counted object detection probabilities for the given parameters (ex: delta method)"""

        with np.errstate(all='ignore'):
            return np.asarray(self.pdotFunc(np.asarray(par, dtype=float)), dtype=float)

    def NCovered(self, par=None, individuals=False):

        """Horvitz-Thompson estimate of abundance in the covered region (sum(1/p) or sum(size/p))"""

        pdot = self.fitted if par is None else self.fittedAt(par)
        if individuals and 'size' in self.dfObjects.columns:
            return np.sum(self.dfObjects['size'].values / pdot)

        return np.sum(1.0 / pdot)

    def predict(self, dfNew=None, intRange=None):

        """Detection probabilities for new data rows (DS methods only), or the fitted ones

        Parameters:
        :param dfNew: None for fitted values, or covariate values for the new rows (DS methods)
        :param intRange: integration range for the new rows (see integrate.integrationRange) ;
                         default [left, width], overridden by intLower / intUpper columns of dfNew, if any
        """

        assert self.converged, 'No prediction from a non converged model'

        if dfNew is None:
            return self.fitted

        assert self.method.name == 'ds', 'Prediction for new data only available with the ds method'

        ddfo = self.ddfo.withData(dfNew)

        return intg.detectionProbabilities(ddfo, intRange, dfData=dfNew,
                                           method=self.dsLikelihood.integration, nNodes=self.dsLikelihood.nNodes)

    def esw(self):

        """Per counted object effective strip half-width (lines) or effective detection radius (points)"""

        assert self.converged, 'No effective width from a non converged model'

        if self.point:
            return np.sqrt(self.fitted * (self.width ** 2 - self.left ** 2) + self.left ** 2)

        return self.fitted * (self.width - self.left)

    def __repr__(self):

        desc = f'{self.method.name} model'
        if self.dsLikelihood is not None:
            desc += f' ; {self.dsLikelihood.ddfo.spec}'
        if self.mrLikelihood is not None:
            desc += f' ; {self.mrLikelihood.spec}'
        if not self.valid:
            return desc + ' (NOT a valid fitted model: ' + repr(self.diagnostics) + ')'

        return desc + f' ; lnl={self.lnl:.6g}, AIC={self.aic:.6g}, converged={self.converged}'


def checkMonoFunction(ddfo, strict=True, nPts=100, tolerance=1e-6, diagnostics=None):

    """Check monotonicity and bounds of a detection function, for every unique covariate combination

    Checks on a regular grid over [left, width]: weak (g(x) <= g(left)), strict (non increasing),
    g <= 1 and g >= 0 (with tolerance).

    :returns: True if all checks succeeded (failures appended to diagnostics as warnings)
    :raises ValueError: if the detection function evaluates to NaN
    """

    diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    grid = np.linspace(ddfo.left, ddfo.width, nPts)[np.newaxis, :]
    reps, _ = uniqueRows(ddfo.scales(), ddfo.shapes())

    failures = set()
    for rep in reps:
        with np.errstate(all='ignore'):
            gx = ddfo.evaluate(grid, rows=np.array([rep]))[0]
        if np.isnan(gx).any():
            raise ValueError('Detection function evaluates to NaN on [{}, {}]'.format(ddfo.left, ddfo.width))
        if (gx[1:] > gx[0] + tolerance).any():
            failures.add('Detection function is not weakly monotonic!')
        if strict and (np.diff(gx) > tolerance).any():
            failures.add('Detection function is not strictly monotonic!')
        if (gx > 1 + tolerance).any():
            failures.add('Detection function is greater than 1 at some distances')
        if (gx < -tolerance).any():
            failures.add('Detection function is less than 0 at some distances')

    for msg in sorted(failures):
        diagnostics.append(msg, head='mono')

    return not failures


def checkMono(model, strict=True, nPts=100, tolerance=1e-6, diagnostics=None):

    """Monotonicity check of a fitted model detection function (see checkMonoFunction)

    :returns: True if OK (or if no DS component to check)
    """

    if model.ddfo is None:
        logger.info1(f'No distance detection function to check for {model.method.name} method')
        return True

    return checkMonoFunction(model.ddfo, strict=strict, nPts=nPts, tolerance=tolerance,
                             diagnostics=diagnostics if diagnostics is not None else model.diagnostics)


def aicTable(*models, k=2):

    """Model selection table: number of parameters and AIC (or other penalty k) for each model

    :returns: DataFrame with df and AIC columns, 1 row per model, in the given order
    """

    return pd.DataFrame([dict(model=repr(mdl), df=mdl.nPars, AIC=-2 * mdl.lnl + k * mdl.nPars) for mdl in models],
                        columns=['model', 'df', 'AIC'])


def _resolveOptions(meta, control):

    meta = utils.assignDefaults(meta, **DefMeta)
    control = utils.assignDefaults(control, **DefControl)
    if meta.monoStrict:
        meta.mono = True

    return meta, control


def _rangeColumns(dfData, intRange):

    """Split the intRange meta data option into per row range columns and a global range

    A (nRows, 2) array, aligned with the source data rows, becomes the intLower / intUpper columns
    (so that it follows the rows kept by truncation and detection selection) ; a 2-item sequence
    is the global range.

    :returns: tuple(data, with range columns if needed, global range or None)
    :raises ValueError: on a wrongly shaped intRange
    """

    if intRange is None:
        return dfData, None

    intRange = np.asarray(intRange, dtype=float)
    if intRange.ndim == 1 and len(intRange) == 2:
        return dfData, intRange
    if intRange.shape != (len(dfData), 2):
        raise ValueError(f'intRange must be a 2-item sequence, or a ({len(dfData)}, 2) array'
                         f' (1 row per observation record) ; got shape {intRange.shape}')

    return dfData.assign(**dict(zip(intg.RangeCols, intRange.T))), None


def _nUniqueDistances(dfData):

    nExact = dfData.loc[~dfData.binned, 'distance'].nunique()
    nBins = len(dfData.loc[dfData.binned, ['distbegin', 'distend']].drop_duplicates())

    return nExact + nBins


def _maximise(lnl, start, lower, upper, control, context, constraints, diagnostics, userSlice=slice(None)):

    """Build the optimisation problem (user bounds override defaults) and solve it

    :returns: Solution
    """

    fixedLower = np.zeros(len(start), dtype=bool)
    fixedUpper = np.zeros(len(start), dtype=bool)
    if control.lowerBounds is not None:
        lower = np.asarray(control.lowerBounds, dtype=float)[userSlice]
        fixedLower[:] = True
    if control.upperBounds is not None:
        upper = np.asarray(control.upperBounds, dtype=float)[userSlice]
        fixedUpper[:] = True
    start = np.clip(start, lower, upper)

    if control.nofit:
        logger.info1('No fit requested: using start values as is')
        return Solution(par=start, value=lnl.negLogLik(start), converged=True, message='no fit requested')

    problem = Problem(lnl.negLogLik, start, lower, upper, fixedLower=fixedLower, fixedUpper=fixedUpper,
                      constraints=constraints, parScale=parameterScales(start) if control.parScale else None)

    return DetFnOptimiser(problem, control, context, diagnostics).run()


def _fitDetectionFunction(dsModel, dfDs, meta, control, method, diagnostics, intRange=None,
                          userSlice=slice(None)):

    """Build the DS likelihood, and maximise it (monotonicity constrained if requested and possible)

    :returns: tuple(DSLikelihood, Solution, monoCheck)
    """

    if meta.mono and dsModel.hasCovariates:
        diagnostics.append('Monotonicity constraints not applied with covariates', head='fit')
        meta.mono = meta.monoStrict = False

    initial = None if control.initial is None else np.asarray(control.initial, dtype=float)[userSlice]
    ddfo = DetectionFunction(dsModel, dfDs, width=meta.width, left=meta.left, point=meta.point, par=initial)

    nUnique = _nUniqueDistances(dfDs)
    if ddfo.nPars > nUnique:
        raise FittingError(f'Number of parameters ({ddfo.nPars}) exceeds the number of unique distances'
                           f' or bins ({nUnique})')

    lnl = DSLikelihood(ddfo, dfDs, intRange=intRange, integration=control.integration,
                       nNodes=control.gaussNodes)

    logger.info1(f'Fitting {ddfo.spec} ({method}) to {lnl.nObs} distances'
                 + (' with {} monotonicity constraints'.format('strict' if meta.monoStrict else 'weak')
                    if meta.mono else ''))

    constraints = None
    if meta.mono:
        constraints = monotonicityConstraints(ddfo, nPoints=control.monoPoints, strict=meta.monoStrict,
                                              tolerance=control.monoTol, randomStart=control.monoRandomStart,
                                              rng=np.random.default_rng(control.seed))

    lower, upper = ddfo.defaultBounds(ddfo.par)
    context = utils.DotDict(method=method, key=dsModel.key, mono=meta.mono)
    sol = _maximise(lnl, ddfo.par, lower, upper, control, context, constraints, diagnostics, userSlice)

    fitted = ddfo.withParams(sol.par)
    if dsModel.key == 'hr' and sol.converged and np.min(fitted.scales()) < 1e-3 * (meta.width - meta.left):
        diagnostics.append('Estimated hazard-rate scale parameter close to 0 ; possible problem in data'
                           ' (ex: spike near zero distance)', head='fit')

    monoCheck = None
    if dsModel.hasAdjustments and sol.converged:
        monoCheck = checkMonoFunction(fitted, strict=True, nPts=max(control.monoPoints, 100),
                                      diagnostics=diagnostics)

    return lnl, sol, monoCheck


def fitDS(data, dsModel, meta=None, control=None):

    """Fit a detection function to single observer (or unique double observer) detections

    Parameters:
    :param data: ObservationSet or DataFrame of observations (see data.ObservationSet)
    :param dsModel: DetectionFunctionSpec
    :param meta: dict or DotDict of meta data options (see DefMeta)
    :param control: dict or DotDict of control options (see optimiser.DefControl)

    :returns: FittedModel
    :raises FittingError: unless control.debug (=> non valid FittedModel returned)
    """

    method = Methods['ds']
    meta, control = _resolveOptions(meta, control)
    diagnostics = Diagnostics()

    with utils.numericOptions():

        obs = data if isinstance(data, ObservationSet) else ObservationSet(data)
        dfSrc, intRange = _rangeColumns(obs.dfData, meta.intRange)
        dfObs, meta.width = ObservationSet.prepare(dfSrc, left=meta.left, width=meta.width,
                                                   binned=meta.binned, breaks=meta.breaks, diagnostics=diagnostics)
        if control.limit:
            dfDs = ObservationSet.uniqueDetections(dfObs)
        else:
            dfDs = dfObs[dfObs.detected == 1].reset_index(drop=True)
            if dfDs.object.duplicated().any():
                raise SurveyDataError('Duplicate object numbers in detections ; use limit option')

        try:
            lnl, sol, monoCheck = _fitDetectionFunction(dsModel, dfDs, meta, control, method.name, diagnostics,
                                                        intRange=intRange)
        except FittingError as exc:
            if not control.debug:
                raise
            diagnostics.append(str(exc), head='fit', level=log.ERROR)
            return FittedModel(method, meta, valid=False, diagnostics=diagnostics)

        hessian, hessianKind = None, None
        if sol.converged:
            hessian, hessianKind = computeHessian(lnl, sol.par, delta=control.hessianDelta, diagnostics=diagnostics,
                                                  secondPartial=not meta.mono)

        ddfo = lnl.ddfo
        model = FittedModel(method, meta, par=sol.par, parNames=ddfo.parNames, lnl=-sol.value,
                            hessian=hessian, hessianKind=hessianKind, converged=sol.converged,
                            message=sol.message, optimizer=sol.backend, dfObjects=dfDs, pdotFunc=lnl.pdot,
                            dsLikelihood=lnl, nDsPars=ddfo.nPars, monoCheck=monoCheck,
                            estimate=control.estimate, diagnostics=diagnostics)

    logger.info1(f'{model}')

    return model


def fitMR(data, method, mrModel, dsModel=None, meta=None, control=None):

    """Fit a double observer (mark-recapture) detection model

    Full independence methods (io.fi, trial.fi, rem.fi): MR model only (+ distance component for binned data).
    Point independence methods (io, trial, rem): DS model for the shape of the detection function
    (fitted to the counted detections) + MR model for detection at distance 0.

    Parameters:
    :param data: ObservationSet or DataFrame of double observer observations
    :param method: method name, see Methods (not ds)
    :param mrModel: likelihood.MRModelSpec
    :param dsModel: DetectionFunctionSpec (for point independence methods)
    :param meta: dict or DotDict of meta data options (see DefMeta)
    :param control: dict or DotDict of control options (see optimiser.DefControl)

    :returns: FittedModel
    :raises FittingError: unless control.debug (=> non valid FittedModel returned)
    """

    assert method in Methods and Methods[method].needsMr, \
           'Unknown MR method {} ; should be one of {}'.format(method, [m for m in Methods if Methods[m].needsMr])
    method = Methods[method]
    assert not method.needsDs or dsModel is not None, f'{method.name} method needs a DS model'

    meta, control = _resolveOptions(meta, control)
    diagnostics = Diagnostics()

    with utils.numericOptions():

        obs = data if isinstance(data, ObservationSet) else ObservationSet(data)
        if not obs.isDoubleObserver:
            raise SurveyDataError(f'{method.name} method needs double observer data')

        dfSrc, intRange = _rangeColumns(obs.dfData, meta.intRange)
        dfObs, meta.width = ObservationSet.prepare(dfSrc, left=meta.left, width=meta.width,
                                                   binned=meta.binned, breaks=meta.breaks, diagnostics=diagnostics)
        dfPairs = ObservationSet.pairs(dfObs)
        counted = (dfPairs.detected1 == 1).values if method.config == 'trial' else np.ones(len(dfPairs), dtype=bool)

        mrLnl = FILikelihood(mrModel, dfPairs, method.config, width=meta.width, left=meta.left, point=meta.point,
                             dsComponent=method.fullIndependence and bool(meta.binned), intRange=intRange,
                             integration=control.integration, nNodes=control.gaussNodes)

        try:

            dsLnl, dsSol, monoCheck, nDsPars = None, None, None, 0
            if method.needsDs:
                dfDs = dfPairs[counted].assign(detected=1, observer=1).reset_index(drop=True)
                nDsPars = DetectionFunction(dsModel, dfDs, width=meta.width, left=meta.left, point=meta.point).nPars
                dsLnl, dsSol, monoCheck = _fitDetectionFunction(dsModel, dfDs, meta, control, method.name,
                                                                diagnostics, intRange=intRange,
                                                                userSlice=slice(0, nDsPars))

            mrStart = mrLnl.initialValues() if control.initial is None \
                      else np.asarray(control.initial, dtype=float)[nDsPars:]
            lower, upper = mrStart - 10.0, mrStart + 10.0
            context = utils.DotDict(method=method.name, key=None, mono=False)
            logger.info1(f'Fitting {mrModel} ({method.name}) to {mrLnl.nObs} capture histories')
            mrSol = _maximise(mrLnl, mrStart, lower, upper, control, context, None, diagnostics,
                              userSlice=slice(nDsPars, None))

        except FittingError as exc:
            if not control.debug:
                raise
            diagnostics.append(str(exc), head='fit', level=log.ERROR)
            return FittedModel(method, meta, valid=False, diagnostics=diagnostics)

        sols = [sol for sol in [dsSol, mrSol] if sol is not None]
        par = np.concatenate([sol.par for sol in sols])
        converged = all(sol.converged for sol in sols)

        hessian, hessianKind = None, None
        if converged:
            hessians = list()
            for lnl, sol in [(dsLnl, dsSol), (mrLnl, mrSol)]:
                if lnl is not None:
                    hessians.append(computeHessian(lnl, sol.par, delta=control.hessianDelta, diagnostics=diagnostics,
                                                   secondPartial=not (lnl is dsLnl and meta.mono)))
            if all(hess is not None for hess, _ in hessians):
                hessian = linalg.block_diag(*[hess for hess, _ in hessians])
                hessianKind = 'second' if any(kind == 'second' for _, kind in hessians) else 'first'

        if method.needsDs:
            def pdotFunc(par):
                return mrLnl.pdotAt(par[nDsPars:], x=0.0)[counted] * dsLnl.pdot(par[:nDsPars])

        else:
            def pdotFunc(par):
                return mrLnl.averagePdot(par)[counted]

        parNames = (dsLnl.ddfo.parNames if dsLnl is not None else []) + mrLnl.parNames
        model = FittedModel(method, meta, par=par, parNames=parNames, lnl=-sum(sol.value for sol in sols),
                            hessian=hessian, hessianKind=hessianKind, converged=converged,
                            message=' & '.join(sol.message for sol in sols),
                            optimizer=' & '.join(str(sol.backend) for sol in sols),
                            dfObjects=dfPairs[counted].reset_index(drop=True), pdotFunc=pdotFunc,
                            dsLikelihood=dsLnl, mrLikelihood=mrLnl, nDsPars=nDsPars, monoCheck=monoCheck,
                            estimate=control.estimate, diagnostics=diagnostics)

    logger.info1(f'{model}')

    return model


def ddf(method, data, dsModel=None, mrModel=None, meta=None, control=None):

    """Fit a detection model with the given method (see Methods)"""

    assert method in Methods, 'Unknown method {} ; should be one of {}'.format(method, list(Methods))

    if method == 'ds':
        return fitDS(data, dsModel, meta=meta, control=control)

    return fitMR(data, method, mrModel, dsModel=dsModel, meta=meta, control=control)
