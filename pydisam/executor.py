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

# Submodule "executor": Runs optimisation attempts (or backends) sequentially or in a thread pool

import concurrent.futures as cofu

from . import log

logger = log.logger('pds.exr')


def _doneFuture(func, *args, **kwargs):

    """Run func now, and wrap its result (or raised exception) into an already done Future"""

    future = cofu.Future()
    try:
        future.set_result(func(*args, **kwargs))
    except Exception as exc:
        future.set_exception(exc)

    return future


class Executor(object):

    """Thread pool or immediate sequential execution of fitting work items, behind the same interface

    Work items submitted here must not share any mutable state (each optimisation attempt
    gets its own copies of parameters and bounds) ; numpy and scipy release the GIL
    in most of the numerical work, hence threads rather than processes.
    """

    def __init__(self, threads=None, name_prefix='pds'):

        """Ctor

        Parameters:
        :param threads: None for immediate sequential execution (at submit time),
                        0 for an automatic number of threads, or > 0
        :param name_prefix: thread names prefix
        """

        assert threads is None or threads >= 0, 'Number of threads must be None or >= 0'

        self.threads = threads
        self.pool = None
        if threads is not None:
            self.pool = cofu.ThreadPoolExecutor(max_workers=threads or None, thread_name_prefix=name_prefix)
            logger.info2('Started a thread pool (max_workers={})'.format(threads or 'auto'))

    def isParallel(self):

        return self.pool is not None and self.pool._max_workers > 1

    def isAsync(self):

        return self.pool is not None

    def submit(self, func, *args, **kwargs):

        if self.pool is None:
            return _doneFuture(func, *args, **kwargs)

        return self.pool.submit(func, *args, **kwargs)

    @staticmethod
    def collect(futures):

        """Wait for all the given futures, and return (results, exceptions) lists, in submission order ;
        for each future, either the result or the exception is None"""

        results, excepts = list(), list()
        for future in futures:
            exc = future.exception()
            results.append(None if exc is not None else future.result())
            excepts.append(exc)

        return results, excepts

    def shutdown(self, wait=True):

        if self.pool is not None:
            self.pool.shutdown(wait=wait)
            logger.info2('Thread pool shut down.')
            self.pool = None

    def __enter__(self):

        return self

    def __exit__(self, *exc):

        self.shutdown()
        return False
