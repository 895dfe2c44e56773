# mrsproc/options.py - MRSProc - processing options
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Options record controlling processing and fitting of one batch."""

from dataclasses import dataclass, fields, replace
from typing import Optional, Tuple

from mrsproc.cfg import Cfg
from mrsproc.errors import UnsupportedTargetError

SEQUENCES = ('unedited', 'mega', 'hermes', 'hercules')
FIT_STYLES = ('separate', 'concatenated')


@dataclass(frozen=True)
class Options:
  """Processing and fitting options.

  Defaults come from Cfg.val via Options.from_cfg(); the dataclass defaults
  mirror the shipped configuration.
  """
  sequence: str = 'unedited'
  edit_target: str = 'none'
  fit_style: str = 'separate'
  vendor: str = 'siemens'
  fit_range: Tuple[float, float] = (0.2, 4.2)
  fit_range_water: Tuple[float, float] = (2.0, 7.4)
  knot_spacing: float = 0.4
  include: Optional[Tuple[str, ...]] = None
  fit_mm: bool = True
  water_band: Tuple[float, float] = (4.5, 4.9)
  water_components: int = 20
  water_components_min: int = 1
  max_nfev: int = 2000

  def __post_init__(self):
    if self.sequence not in SEQUENCES:
      raise UnsupportedTargetError(f"Unknown sequence {self.sequence}, use one of {SEQUENCES}")
    if self.fit_style not in FIT_STYLES:
      raise RuntimeError(f"Unknown fit style {self.fit_style}, use one of {FIT_STYLES}")
    if self.sequence == 'unedited' and self.fit_style != 'separate':
      # Concatenated fitting needs several conditions
      object.__setattr__(self, 'fit_style', 'separate')
    if self.water_components_min < 1 or self.water_components < self.water_components_min:
      raise RuntimeError("Water removal needs water_components >= water_components_min >= 1")

  @staticmethod
  def from_cfg(**kwargs):
    """Options with defaults from the current configuration, overridden by kwargs."""
    vals = {
      'fit_range': tuple(Cfg.val['fit_range']),
      'fit_range_water': tuple(Cfg.val['fit_range_water']),
      'knot_spacing': Cfg.val['fit_knot_spacing'],
      'fit_mm': Cfg.val['fit_mm'],
      'water_band': tuple(Cfg.val['water_band']),
      'water_components': Cfg.val['water_components'],
      'water_components_min': Cfg.val['water_components_min'],
      'max_nfev': Cfg.val['fit_max_nfev']
    }
    names = {f.name for f in fields(Options)}
    for k in kwargs:
      if k not in names:
        raise RuntimeError(f"Unknown option {k}")
    vals.update(kwargs)
    return Options(**vals)

  def replace(self, **kwargs):
    return replace(self, **kwargs)

  @property
  def edited(self):
    return self.sequence != 'unedited'
