# tests/test_reference.py - MRSProc - frequency and phase referencing
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

import numpy as np
import pytest

from mrsproc.errors import NumericalFailure
from mrsproc.reference import (apply_reference, cr_cho_referencing, has_cr_cho,
                               landmark_cross_correlation, mm_referencing, naa_referencing,
                               phase_cr_cho, reference_landmarks, water_referencing)
from mrsproc.simulate import singlet_fid
from mrsproc.spectrum import Spectrum

DWELL = 1.0 / 2000.0
NPTS = 2048
TXFRQ = 123.2
METABOLITES = [(2.008, 36.0), (3.027, 24.0), (3.185, 18.0)]


def _spectrum(singlets, offset_hz=0.0, lorentz_hz=4.0):
  s = Spectrum(singlet_fid(singlets, NPTS, DWELL, TXFRQ, 4.68, lorentz_hz), DWELL, TXFRQ,
               centre_ppm=4.68)
  return s.freq_shift(offset_hz)


def test_water_referencing() -> None:
  s = _spectrum([(4.68, 100.0)], offset_hz=5.0)
  assert water_referencing(s) == pytest.approx(5.0, abs=0.1)


def test_apply_reference_accumulates_shift() -> None:
  s = _spectrum([(4.68, 100.0)], offset_hz=5.0)
  r = apply_reference(s, 3.0)
  r = apply_reference(r, water_referencing(r))
  assert r.provenance.ref_shift == pytest.approx(5.0, abs=0.1)
  assert water_referencing(r) == pytest.approx(0.0, abs=0.1)
  assert 'referenced' in r.provenance.flags


def test_cr_cho_referencing() -> None:
  shift, fwhm = cr_cho_referencing(_spectrum(METABOLITES, offset_hz=3.0))
  assert shift == pytest.approx(3.0, abs=0.3)
  assert fwhm == pytest.approx(4.0, rel=0.2)


def test_naa_referencing() -> None:
  shift, _ = naa_referencing(_spectrum(METABOLITES, offset_hz=-2.0))
  assert shift == pytest.approx(-2.0, abs=0.3)


def test_mm_referencing() -> None:
  shift, _ = mm_referencing(_spectrum([(0.915, 20.0)], offset_hz=1.5, lorentz_hz=8.0))
  assert shift == pytest.approx(1.5, abs=0.5)


def test_coarse_cross_correlation() -> None:
  landmarks = [(3.027, 1.0), (3.185, 1.0), (2.008, 1.0)]
  shift = landmark_cross_correlation(_spectrum(METABOLITES, offset_hz=7.0), landmarks)
  assert shift == pytest.approx(7.0, abs=1.0)


def test_reference_landmarks_combines_coarse_and_fit() -> None:
  shift, _ = reference_landmarks(_spectrum(METABOLITES, offset_hz=4.0))
  assert shift == pytest.approx(4.0, abs=0.3)
  # Without NAA the Cr/Cho fit is used
  shift, _ = reference_landmarks(_spectrum(METABOLITES[1:], offset_hz=-6.0))
  assert shift == pytest.approx(-6.0, abs=0.3)


def test_phase_cr_cho() -> None:
  s = _spectrum(METABOLITES).add_phase(30.0)
  phased, ph = phase_cr_cho(s)
  assert ph == pytest.approx(30.0, abs=2.0)
  spec, _ = phased.freq_range(3.0, 3.06)
  assert np.max(np.real(spec)) > 0.9 * np.max(np.abs(spec))


def test_phasing_needs_cr_cho() -> None:
  naa = _spectrum([(2.01, 36.0)]).add_phase(30.0)
  assert not has_cr_cho(naa)
  assert has_cr_cho(_spectrum(METABOLITES))
  with pytest.raises(NumericalFailure):
    phase_cr_cho(naa)
