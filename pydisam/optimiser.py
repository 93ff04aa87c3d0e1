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

# Submodule "optimiser": Likelihood maximisation strategies (unconstrained, monotonicity constrained,
#                        alternate global search backend), and Hessian computation

from collections import namedtuple as ntuple
import importlib.metadata as imeta

import numpy as np
from scipy import optimize

import zoopt

from . import log, runtime
from .diagnostics import Diagnostics, FittingError
from .executor import Executor
from .likelihood import KPenaltyValue

runtime.update({'zoopt': imeta.version('zoopt')})  # zoopt has no standard __version__ !

logger = log.logger('pds.opr')

# Result of 1 optimisation (attempt or whole strategy).
Solution = ntuple('Solution', ['par', 'value', 'converged', 'message', 'backend', 'nEvals'],
                  defaults=[None, KPenaltyValue, False, '', None, 0])

# Default values of optimisation control options.
DefControl = dict(optimizer='native', parallel=False, refit=True, nRefits=25, maxIter=12, optimMaxIter=1000,
                  initial=None, lowerBounds=None, upperBounds=None, parScale=True,
                  monoPoints=10, monoTol=1e-8, monoMethod='slsqp', monoRandomStart=False, monoOuterIter=100,
                  seed=None, estimate=True, limit=True, debug=False, nofit=False,
                  integration='gauss', gaussNodes=64, altBudget=2000, hessianDelta=1e-5)

Optimizers = ['native', 'alternate', 'both']
MonoMethods = ['slsqp', 'trust-constr']


class Problem(object):

    """What is to be minimised: objective, start values, bounds, and optional inequality constraints

    Bounds are mutable only through expandBounds (returns a new Problem) so that concurrent attempts
    never share state.
    """

    def __init__(self, objective, start, lower, upper, fixedLower=None, fixedUpper=None,
                 constraints=None, parScale=None):

        """Ctor

        Parameters:
        :param objective: function(par) => negative log-likelihood (finite)
        :param start: start parameter vector
        :param lower: lower bounds
        :param upper: upper bounds
        :param fixedLower: bool mask of user specified lower bounds (never expanded)
        :param fixedUpper: bool mask of user specified upper bounds (never expanded)
        :param constraints: None or function(par) => vector, that must be >= 0
        :param parScale: None or positive vector of parameter scales (optimisers work on par / parScale)
        """

        self.objective = objective
        self.start = np.asarray(start, dtype=float)
        self.lower = np.asarray(lower, dtype=float)
        self.upper = np.asarray(upper, dtype=float)
        self.fixedLower = np.zeros(len(start), dtype=bool) if fixedLower is None else np.asarray(fixedLower)
        self.fixedUpper = np.zeros(len(start), dtype=bool) if fixedUpper is None else np.asarray(fixedUpper)
        self.constraints = constraints
        self.parScale = np.ones(len(start)) if parScale is None else np.asarray(parScale, dtype=float)

        assert len(self.lower) == len(self.start) == len(self.upper), 'Bounds and start values sizes mismatch'
        assert (self.lower <= self.start).all() and (self.start <= self.upper).all(), \
               f'Start values {self.start} not within bounds [{self.lower}, {self.upper}]'

    @property
    def nPars(self):

        return len(self.start)

    def onBounds(self, par, relTol=1e-6):

        """Masks of parameters sitting on their (expandable) lower and upper bounds"""

        tol = relTol * (self.upper - self.lower)

        return (par - self.lower <= tol) & ~self.fixedLower, (self.upper - par <= tol) & ~self.fixedUpper

    def expandBounds(self, par):

        """New problem with bounds expanded where par sits on them, and starting from par"""

        atLower, atUpper = self.onBounds(par)
        span = self.upper - self.lower
        lower = np.where(atLower, self.lower - span, self.lower)
        upper = np.where(atUpper, self.upper + span, self.upper)

        return Problem(self.objective, np.clip(par, lower, upper), lower, upper, self.fixedLower, self.fixedUpper,
                       self.constraints, self.parScale)

    def withStart(self, start):

        return Problem(self.objective, np.clip(start, self.lower, self.upper), self.lower, self.upper,
                       self.fixedLower, self.fixedUpper, self.constraints, self.parScale)


def parameterScales(start):

    """Scales for par / scale rescaling: |start| where > 1, 1 elsewhere"""

    return np.maximum(np.abs(start), 1.0)


def monotonicityConstraints(ddfo, nPoints=10, strict=True, tolerance=1e-8, randomStart=False, rng=None):

    """Constraint function(par) => vector >= 0 when g is monotonic and within [0, 1] on a grid over [left, width]

    Strict: g(x_i) <= g(x_i-1) ; weak: g(x_i) <= g(left) ; plus 0 <= g(x_i) <= 1 for all grid points.
    With randomStart, the inner grid points are randomly drawn (left and width always included).
    """

    if randomStart:
        rng = rng if rng is not None else np.random.default_rng()
        inner = np.sort(rng.uniform(ddfo.left, ddfo.width, size=max(nPoints - 2, 0)))
        grid = np.concatenate([[ddfo.left], inner, [ddfo.width]])
    else:
        grid = np.linspace(ddfo.left, ddfo.width, nPoints)
    grid = grid[np.newaxis, :]
    row0 = np.array([0])

    def constraints(par):
        with np.errstate(all='ignore'):
            gx = ddfo.withParams(par).evaluate(grid, rows=row0)[0]
        mono = gx[:-1] - gx[1:] if strict else gx[0] - gx[1:]
        values = np.concatenate([mono, gx, 1.0 - gx]) + tolerance
        return np.where(np.isfinite(values), values, -1.0)

    return constraints


class NativeBackend(object):

    """Local gradient based minimisation through scipy.optimize.minimize

    L-BFGS-B when unconstrained, SLSQP or trust-constr with inequality constraints.
    """

    Name = 'native'

    def __init__(self, maxIter=1000, monoMethod='slsqp', monoOuterIter=100):

        assert monoMethod in MonoMethods, f'Unknown constrained method {monoMethod} ; should be one of {MonoMethods}'

        self.maxIter = maxIter
        self.monoMethod = monoMethod
        self.monoOuterIter = monoOuterIter

    @staticmethod
    def validate(context):

        return ''

    def minimise(self, problem):

        scale = problem.parScale
        bounds = list(zip(problem.lower / scale, problem.upper / scale))

        def func(z):
            return problem.objective(z * scale)

        z0 = problem.start / scale

        if problem.constraints is None:
            res = optimize.minimize(func, z0, method='L-BFGS-B', bounds=bounds,
                                    options=dict(maxiter=self.maxIter))
        elif self.monoMethod == 'slsqp':
            res = optimize.minimize(func, z0, method='SLSQP', bounds=bounds,
                                    constraints=[dict(type='ineq', fun=lambda z: problem.constraints(z * scale))],
                                    options=dict(maxiter=self.monoOuterIter, ftol=1e-10))
        else:
            cons = optimize.NonlinearConstraint(lambda z: problem.constraints(z * scale), 0.0, np.inf)
            res = optimize.minimize(func, z0, method='trust-constr', bounds=optimize.Bounds(*zip(*bounds)),
                                    constraints=[cons], options=dict(maxiter=self.maxIter))

        value = float(res.fun)
        converged = bool(res.success) and np.isfinite(value) and value < KPenaltyValue
        if converged and problem.constraints is not None:
            converged = bool((problem.constraints(res.x * scale) >= -1e-6).all())

        return Solution(par=res.x * scale, value=value, converged=converged, message=str(res.message),
                        backend=self.Name, nEvals=int(getattr(res, 'nfev', 0)))


class AlternateBackend(object):

    """Global derivative-free search through zoopt (RACOS), polished by a Nelder-Mead local search

    Only for single observer models (ds method) without monotonicity constraints, and with key functions
    hn, hr or unif.
    """

    Name = 'zoopt'
    Keys = ['hn', 'hr', 'unif']

    def __init__(self, budget=2000, maxIter=1000, maxRetries=1, seed=None):

        self.budget = budget
        self.maxIter = maxIter
        self.maxRetries = max(maxRetries, 0)
        self.seed = seed

    @classmethod
    def validate(cls, context):

        """Reason why this backend can't handle the problem (empty string if it can)

        :param context: DotDict(method, key, mono)
        """

        if context.method != 'ds':
            return f'alternate optimizer not available for {context.method} method (only ds)'
        if context.mono:
            return 'alternate optimizer does not support monotonicity constraints'
        if context.key not in cls.Keys:
            return f'alternate optimizer does not support {context.key} key function'

        return ''

    def _optimize(self, objective, params):

        nTriesLeft = maxTries = self.maxRetries + 1
        while True:
            try:
                return zoopt.Opt.min(objective, params)
            except Exception as exc:
                nTriesLeft -= 1
                if nTriesLeft > 0:
                    logger.warning('zoopt.Opt.min retry #{} on {}'.format(maxTries - nTriesLeft, exc), exc_info=True)
                else:
                    logger.warning('zoopt.Opt.min failed after #{} tries on {}'.format(maxTries, exc), exc_info=True)
                    return None

    def minimise(self, problem):

        assert problem.constraints is None, 'No constraint supported by the alternate optimizer'

        dims = zoopt.Dimension(size=problem.nPars, regs=[[lo, hi] for lo, hi in zip(problem.lower, problem.upper)],
                               tys=[True] * problem.nPars)
        objective = zoopt.Objective(func=lambda sol: problem.objective(np.array(sol.get_x())), dim=dims)
        params = zoopt.Parameter(budget=self.budget, **(dict(seed=self.seed) if self.seed is not None else {}))

        solution = self._optimize(objective, params)
        if solution is None:
            return Solution(par=problem.start, message='zoopt failed', backend=self.Name)

        x0 = np.clip(np.array(solution.get_x()), problem.lower, problem.upper)
        logger.debug2(f'zoopt solution: {x0} => {solution.get_value()}')

        res = optimize.minimize(problem.objective, x0, method='Nelder-Mead',
                                bounds=list(zip(problem.lower, problem.upper)),
                                options=dict(maxiter=self.maxIter, xatol=1e-8, fatol=1e-10))
        value = float(res.fun)
        if value > solution.get_value():
            par, value, converged = x0, float(solution.get_value()), False
        else:
            par, converged = res.x, bool(res.success)
        converged = converged and np.isfinite(value) and value < KPenaltyValue

        return Solution(par=par, value=value, converged=converged, message=str(res.message),
                        backend=self.Name, nEvals=self.budget + int(res.nfev))


class DetFnOptimiser(object):

    """Maximum likelihood estimation of detection model parameters through 1 or 2 backends

    Native backend strategy: minimise ; while solution on a bound, expand bounds and re-minimise
    (at most maxIter times) ; if not converged and refit, multi-start refits from jittered starts
    (nRefits attempts, possibly in parallel), keep the best.
    Alternate backend (if enabled and able): zoopt + polish ; its solution is retained only if strictly
    better than the native one (when both run).
    """

    def __init__(self, problem, control, context, diagnostics=None):

        """Ctor

        Parameters:
        :param problem: Problem
        :param control: DotDict of control options (see DefControl)
        :param context: DotDict(method, key, mono) for backend validation
        :param diagnostics: Diagnostics to append warnings to
        """

        assert control.optimizer in Optimizers, \
               f'Unknown optimizer {control.optimizer} ; should be one of {Optimizers}'

        self.problem = problem
        self.control = control
        self.context = context
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.rng = np.random.default_rng(control.seed)

        self.native = NativeBackend(maxIter=control.optimMaxIter, monoMethod=control.monoMethod,
                                    monoOuterIter=control.monoOuterIter)
        self.alternate = None
        if control.optimizer in ['alternate', 'both']:
            reason = AlternateBackend.validate(context)
            if reason:
                self.diagnostics.append(reason + ' ; using native optimizer only', head='fit')
            else:
                self.alternate = AlternateBackend(budget=control.altBudget, maxIter=control.optimMaxIter,
                                                  seed=control.seed)
        self.useNative = control.optimizer in ['native', 'both'] or self.alternate is None

    def _nativeAttempt(self, problem):

        """Minimise, expanding bounds while solution sits on some of them"""

        sol = self.native.minimise(problem)
        for _ in range(self.control.maxIter):
            atLower, atUpper = problem.onBounds(sol.par)
            if not (atLower.any() or atUpper.any()):
                break
            logger.debug2('Solution on bound(s) for parameter(s) {} ; expanding'
                          .format(list(np.flatnonzero(atLower | atUpper))))
            problem = problem.expandBounds(sol.par)
            newSol = self.native.minimise(problem)
            if newSol.value <= sol.value:
                sol = newSol
        else:
            atLower, atUpper = problem.onBounds(sol.par)
            if atLower.any() or atUpper.any():
                self.diagnostics.append('solution still on bound(s) after {} bound expansion(s)'
                                        .format(self.control.maxIter), head='fit')

        logger.debug1(f'Native attempt: value={sol.value:.6g}, converged={sol.converged}, par={sol.par}')

        return sol

    def _jitteredStarts(self, par):

        starts = list()
        for _ in range(self.control.nRefits):
            jitter = self.rng.uniform(-1.0, 1.0, size=len(par)) * 0.25 * np.maximum(np.abs(par), 1.0)
            starts.append(par + jitter)

        return starts

    def _runNative(self, executor):

        best = self._nativeAttempt(self.problem)

        if not best.converged and self.control.refit and self.control.nRefits > 0:

            logger.info2(f'Not converged ({best.message}) ; trying {self.control.nRefits} refit(s)')
            base = best.par if best.value < KPenaltyValue else self.problem.start
            futures = [executor.submit(self._nativeAttempt, self.problem.withStart(start))
                       for start in self._jitteredStarts(base)]
            results, excepts = executor.collect(futures)
            for sol, exc in zip(results, excepts):
                if exc is not None:
                    logger.warning(f'Refit attempt failed: {exc}')
                    continue
                # Converged first, then lowest objective.
                if (sol.converged, -sol.value) > (best.converged, -best.value):
                    best = sol

        return best

    def run(self):

        """Run enabled backends, and select the best solution

        :returns: Solution
        :raises FittingError: when no backend produced a finite likelihood
        """

        threads = None
        if self.control.parallel:
            threads = 0 if self.control.parallel is True else int(self.control.parallel)

        with Executor(threads=threads, name_prefix='pds-fit') as executor:

            altFuture = executor.submit(self.alternate.minimise, self.problem) if self.alternate else None

            nativeSol = self._runNative(executor) if self.useNative else None

            altSol = None
            if altFuture is not None:
                try:
                    altSol = altFuture.result()
                    logger.debug1(f'Alternate backend: value={altSol.value:.6g}, converged={altSol.converged}')
                except Exception as exc:
                    self.diagnostics.append(f'alternate optimizer failed: {exc}', head='fit')

        candidates = [sol for sol in [nativeSol, altSol] if sol is not None and sol.value < KPenaltyValue]
        if not candidates:
            raise FittingError('No finite likelihood reached by any optimizer ({}): check the model and data'
                               .format(', '.join(sol.message for sol in [nativeSol, altSol] if sol is not None)))

        best = nativeSol if nativeSol is not None and nativeSol.value < KPenaltyValue else None
        if altSol is not None and altSol.value < KPenaltyValue and (best is None or altSol.value < best.value):
            if best is not None:
                logger.info1(f'Alternate optimizer solution retained ({altSol.value:.6g} < {best.value:.6g})')
            best = altSol

        if not best.converged:
            self.diagnostics.append(f'optimisation did not converge: {best.message}', head='fit')

        return best


# Hessian and covariance matrices ##############################################################
def parameterSteps(par, delta):

    return delta * np.maximum(np.abs(par), 1.0)


def scoreMatrix(lnlTerms, par, delta=1e-5):

    """Per observation scores (derivatives of the log-likelihood terms), by central differences

    :returns: (nObs, nPars) array
    """

    par = np.asarray(par, dtype=float)
    steps = parameterSteps(par, delta)
    lCols = list()
    for j, h in enumerate(steps):
        parP, parM = par.copy(), par.copy()
        parP[j] += h
        parM[j] -= h
        lCols.append((lnlTerms(parP) - lnlTerms(parM)) / (2 * h))

    return np.column_stack(lCols)


def firstPartialHessian(lnlTerms, par, delta=1e-5):

    """Outer product of scores (first partial derivatives) Hessian approximation"""

    scores = scoreMatrix(lnlTerms, par, delta)

    return scores.T @ scores


def secondPartialHessian(negLogLik, par, delta=1e-4):

    """Numerical Hessian of the negative log-likelihood, by central differences"""

    par = np.asarray(par, dtype=float)
    steps = parameterSteps(par, delta)
    nPars = len(par)
    f0 = negLogLik(par)
    hess = np.empty((nPars, nPars))
    for i in range(nPars):
        ei = np.zeros(nPars)
        ei[i] = steps[i]
        hess[i, i] = (negLogLik(par + ei) - 2 * f0 + negLogLik(par - ei)) / steps[i] ** 2
        for j in range(i):
            ej = np.zeros(nPars)
            ej[j] = steps[j]
            hess[i, j] = hess[j, i] = \
                (negLogLik(par + ei + ej) - negLogLik(par + ei - ej)
                 - negLogLik(par - ei + ej) + negLogLik(par - ei - ej)) / (4 * steps[i] * steps[j])

    return hess


def isSingular(matrix, relTol=1e-10):

    if matrix is None or not np.isfinite(matrix).all():
        return True
    eigvals = np.linalg.eigvalsh((matrix + matrix.T) / 2)

    return eigvals.min() <= relTol * max(abs(eigvals.max()), 1e-300)


def solveCov(matrix, relTol=None):

    """Regularised (pseudo-)inverse of a symmetric matrix, through its eigen decomposition

    Eigen values below relTol * largest one are discarded (default relTol = sqrt(machine eps)).
    :returns: the inverse, or None if not computable
    """

    if matrix is None or not np.isfinite(matrix).all():
        return None

    relTol = np.sqrt(np.finfo(float).eps) if relTol is None else relTol
    eigvals, eigvecs = np.linalg.eigh((matrix + matrix.T) / 2)
    if eigvals.max() <= 0:
        return None
    keep = eigvals > relTol * eigvals.max()
    invVals = np.where(keep, 1.0 / np.where(keep, eigvals, 1.0), 0.0)

    return (eigvecs * invVals) @ eigvecs.T


def computeHessian(lnl, par, delta=1e-5, diagnostics=None, secondPartial=True):

    """Hessian of a likelihood at par: first partial, with fallback to the second partial one

    :param lnl: likelihood object with lnlTerms(par) and negLogLik(par)
    :param secondPartial: if False, no fallback (ex: fits with monotonicity constraints, where the
                          constrained optimum is not a stationary point of the likelihood)
    :returns: tuple(Hessian or None, kind = 'first' | 'second' | None)
    """

    diagnostics = diagnostics if diagnostics is not None else Diagnostics()

    with np.errstate(all='ignore'):

        hess = firstPartialHessian(lnl.lnlTerms, par, delta)
        if not isSingular(hess):
            return hess, 'first'

        if not secondPartial:
            diagnostics.append('First partial hessian calculation failed with monotonicity enforced ; no hessian',
                               head='hessian')
            return None, None

        diagnostics.append('First partial hessian calculation failed ; using second partial hessian',
                           head='hessian')
        hess = secondPartialHessian(lnl.negLogLik, par, delta=max(delta, 1e-4))
        if not isSingular(hess):
            return hess, 'second'

    diagnostics.append('Second partial hessian calculation failed too ; no variance for parameters',
                       head='hessian')

    return None, None
