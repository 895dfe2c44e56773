# mrsproc/conditions.py - MRSProc - spectral conditions
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Named spectral conditions produced by processing.

Sub-spectra of an edited experiment are A-D in acquisition role order (after
classification): for MEGA A is the edit-OFF and B the edit-ON sub-spectrum,
so OFF and ON are aliases of A and B. Unedited data only produces A.
"""

from enum import Enum


class ConditionKind(Enum):
  A = 'A'
  B = 'B'
  C = 'C'
  D = 'D'
  OFF = 'A'
  ON = 'B'
  DIFF1 = 'diff1'
  DIFF2 = 'diff2'
  SUM = 'sum'
  REF = 'ref'
  WATER = 'w'
  MM = 'mm'

  @property
  def is_subspectrum(self):
    return self.value in ('A', 'B', 'C', 'D')

  @property
  def is_water(self):
    return self in (ConditionKind.REF, ConditionKind.WATER)

  @staticmethod
  def parse(name):
    """Condition from its value or member name (case insensitive)."""
    if isinstance(name, ConditionKind):
      return name
    for c in ConditionKind:
      if c.value.lower() == name.lower():
        return c
    if name.upper() in ConditionKind.__members__:
      return ConditionKind[name.upper()]
    raise RuntimeError(f"Unknown condition {name}")

SUBSPECTRA = [ConditionKind.A, ConditionKind.B, ConditionKind.C, ConditionKind.D]
