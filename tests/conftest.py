# tests/conftest.py - MRSProc - shared test setup
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

import copy

import pytest

from mrsproc.cfg import Cfg


@pytest.fixture(autouse=True)
def _restore_cfg():
  saved = copy.deepcopy(Cfg.val)
  yield
  Cfg.val.clear()
  Cfg.val.update(saved)
