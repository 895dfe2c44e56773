# tests/test_options.py - MRSProc - processing options and configuration
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

import pytest

from mrsproc.cfg import Cfg
from mrsproc.errors import PreconditionError, UnsupportedTargetError
from mrsproc.options import Options


def test_defaults_from_configuration(monkeypatch) -> None:
  monkeypatch.setitem(Cfg.val, 'water_components', 12)
  o = Options.from_cfg(sequence='mega', edit_target='GSH')
  assert o.water_components == 12
  assert o.fit_range == tuple(Cfg.val['fit_range'])
  assert o.edited
  assert not Options.from_cfg().edited


def test_unedited_data_is_fitted_separately() -> None:
  assert Options(fit_style='concatenated').fit_style == 'separate'
  assert Options(sequence='hermes', fit_style='concatenated').fit_style == 'concatenated'


def test_invalid_options() -> None:
  with pytest.raises(UnsupportedTargetError):
    Options(sequence='press-edit')
  assert issubclass(UnsupportedTargetError, PreconditionError)
  with pytest.raises(RuntimeError):
    Options(fit_style='joint')
  with pytest.raises(RuntimeError):
    Options(water_components=2, water_components_min=3)
  with pytest.raises(RuntimeError):
    Options.from_cfg(no_such_option=1)


def test_replace_keeps_validation() -> None:
  o = Options(sequence='mega', edit_target='GABA')
  r = o.replace(vendor='philips')
  assert r.vendor == 'philips'
  assert r.edit_target == 'GABA'
  assert o.vendor == 'siemens'
  with pytest.raises(RuntimeError):
    o.replace(water_components_min=0)
