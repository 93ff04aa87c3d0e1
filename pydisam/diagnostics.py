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

# Submodule "diagnostics": Exception classes, and warning / error accumulation for the end user

from . import log

logger = log.logger('pds.dgn')


class SurveyDataError(ValueError):

    """Malformed input data (observations, regions, samples): abort with no partial result"""


class FittingError(RuntimeError):

    """Detection function fitting impossible, or failed whatever the tried optimisation strategies"""


class Diagnostics(object):

    """Accumulator of warning (or error) messages, for shipping them to the end user

    An instance is explicitly passed along nested helper calls that may complain,
    and finally attached to the produced result (fitted model, abundance estimates) ;
    each message is also logged when appended.
    """

    def __init__(self, message=None, head=''):

        """Ctor

        Parameters:
        :param message: string or Diagnostics
        :param head: string for grouping messages (ex: 'fit', 'dht') ; ignored if message is a Diagnostics
        """

        self.heads = list()
        self.messages = list()

        if message:
            self.append(message, head)

    def append(self, message, head='', level=log.WARNING):

        """Append a message (or another Diagnostics' ones) to self

        Parameters:
        :param message: string or Diagnostics
        :param head: string ; ignored if message is a Diagnostics
        :param level: logging level for immediately logging the message (None => not logged)
        """

        if isinstance(message, Diagnostics):
            self.heads += message.heads
            self.messages += message.messages
        else:
            self.heads.append(head)
            self.messages.append(message)
            if level is not None:
                logger.log(level, (head + ' : ' if head else '') + message)

        return self

    warn = append

    def contains(self, pattern):

        """True if any message contains the given sub-string"""

        return any(pattern in msg for msg in self.messages)

    def byHead(self, head):

        return [msg for hd, msg in zip(self.heads, self.messages) if hd == head]

    def __len__(self):

        return len(self.messages)

    def __iter__(self):

        return iter(zip(self.heads, self.messages))

    def __repr__(self):

        msgs = list()
        prvHd = ''
        for hd, msg in zip(self.heads, self.messages):
            txt = ''
            if hd != prvHd and hd:
                txt += hd + ' : '
            txt += msg
            msgs.append(txt)
            prvHd = hd
        return ' & '.join(msgs)

    def __bool__(self):

        return any(msg for msg in self.messages)
