# tests/test_quality.py - MRSProc - quality metrics
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

import numpy as np
import pytest

from mrsproc.conditions import ConditionKind
from mrsproc.errors import NumericalFailure, PreconditionError
from mrsproc.quality import QualityMetrics, QualityReport, fwhm, measure, snr
from mrsproc.simulate import singlet_fid
from mrsproc.spectrum import Spectrum

DWELL = 1.0 / 2000.0
NPTS = 2048


def _spectrum(lorentz_hz=4.0, noise=0.0, seed=0):
  fid = singlet_fid([(2.008, 36.0), (3.027, 24.0)], NPTS, DWELL, 123.2, 4.68, lorentz_hz)
  if noise > 0.0:
    rng = np.random.default_rng(seed)
    fid = fid + noise * (rng.standard_normal(NPTS) + 1j*rng.standard_normal(NPTS))
  return Spectrum(fid, DWELL, 123.2, centre_ppm=4.68, condition=ConditionKind.A)


def test_snr_of_flat_noise_window_is_infinite() -> None:
  s = Spectrum(np.concatenate(([1.0], np.zeros(NPTS - 1))), DWELL, 123.2, centre_ppm=4.68)
  assert snr(s, (1.8, 2.2)) == np.inf


def test_snr_of_non_finite_spectrum() -> None:
  s = _spectrum()
  fid = s.fid.copy()
  fid[5] = np.nan
  with pytest.raises(NumericalFailure):
    snr(s.replace(fid=fid), (1.8, 2.2))


def test_snr_decreases_with_noise() -> None:
  low = snr(_spectrum(noise=0.1), (1.8, 2.2))
  high = snr(_spectrum(noise=1.0), (1.8, 2.2))
  assert np.isfinite(low)
  assert low > 5.0 * high


def test_snr_window_checks() -> None:
  with pytest.raises(PreconditionError):
    snr(_spectrum(), (40.0, 41.0))
  with pytest.raises(PreconditionError):
    snr(_spectrum(), (1.8, 2.2), noise=(40.0, 41.0))


def test_fwhm_of_lorentzian() -> None:
  hz, ppm = fwhm(_spectrum(lorentz_hz=6.0), (1.8, 2.2))
  assert hz == pytest.approx(6.0, rel=0.05)
  assert ppm == pytest.approx(6.0 / 123.2, rel=0.05)


def test_fwhm_without_crossing() -> None:
  hz, ppm = fwhm(_spectrum(lorentz_hz=6.0), (1.995, 2.02))
  assert np.isnan(hz)
  assert np.isnan(ppm)


def test_measure() -> None:
  m = measure(_spectrum(noise=0.1), (1.8, 2.2), dataset=3)
  assert m.dataset == 3
  assert m.condition == 'A'
  assert m.window == (1.8, 2.2)
  assert m.fwhm_hz == pytest.approx(4.0, rel=0.1)


def test_report_summary() -> None:
  report = QualityReport()
  report.add([QualityMetrics(0, 'A', 10.0, 4.0, 0.03), QualityMetrics(1, 'A', 20.0, 6.0, 0.05),
              QualityMetrics(0, 'DIFF1', np.inf, np.nan, np.nan)])
  report.add_failure(2, 'bad', 'NumericalFailure: water')
  summary = report.summary()
  assert report.conditions() == ['A', 'DIFF1']
  assert summary['A']['n'] == 2
  assert summary['A']['snr'] == pytest.approx((15.0, 5.0))
  assert summary['A']['fwhm_hz'] == pytest.approx((5.0, 1.0))
  assert np.isnan(summary['DIFF1']['snr'][0])
  lines = report.lines()
  assert lines[0].startswith('A: n=2')
  assert lines[-1] == 'failed 2 (bad): NumericalFailure: water'
