# mrsproc/errors.py - MRSProc - processing errors
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Error types raised by MRSProc.

All errors derive from RuntimeError, so callers that only care about
"processing failed" can keep catching RuntimeError.
"""


class PreconditionError(RuntimeError):
  """Input violates a requirement of the operation (e.g. zero averages)."""


class UnsupportedTargetError(PreconditionError):
  """Editing target or sequence without an implemented classifier."""


class DataInconsistencyError(RuntimeError):
  """Inputs that must match do not (sample counts, paired lists, grids)."""


class NumericalFailure(RuntimeError):
  """A numerical routine produced non-finite output or did not converge."""
