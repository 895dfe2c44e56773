# tests/test_fit.py - MRSProc - linear-combination model fitting
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

import numpy as np
import pytest

from mrsproc.basis import BasisSet
from mrsproc.cfg import Cfg
from mrsproc.conditions import ConditionKind
from mrsproc.errors import PreconditionError
from mrsproc.fit import (FitParameters, FitState, advance, fit_concatenated, fit_spectrum,
                         fit_water, model_spectrum, prepare_basis, spline_baseline)
from mrsproc.options import Options
from mrsproc.progress import Recorder
from mrsproc.simulate import singlet_fid, synthetic_basis
from mrsproc.spectrum import Spectrum, npfft

NAMES = ['Cr', 'NAA', 'Cho', 'Glu', 'Ins']
AMPLITUDES = np.array([8.0, 12.0, 2.0, 10.0, 6.0])


def _options(**kwargs):
  return Options(fit_mm=False, max_nfev=400, **kwargs)


def _synthetic_fit_data(ph0=15.0, lorentz=2.0, gauss=2.0, shift=1.5, base_scale=0.1):
  basis = synthetic_basis(NAMES).normalise()
  t = np.arange(basis.npts) * basis.dwelltime
  mod = np.exp((-np.pi*lorentz + 2j*np.pi*shift) * t) * \
        np.exp(-(np.pi*gauss*t)**2 / (4.0*np.log(2.0)))
  fid = (basis.fids @ AMPLITUDES) * mod * np.exp(1j*np.radians(ph0))
  spec = npfft.fftshift(npfft.fft(fid))
  ppm = basis.ppm_axis()
  coef = base_scale * np.linspace(-1.0, 1.0, spline_baseline(ppm[:1], 0.2, 4.2, 0.4).shape[1])
  baseline = spline_baseline(ppm, 0.2, 4.2, 0.4) @ coef
  fid = npfft.ifft(npfft.ifftshift(spec + baseline))
  s = Spectrum(fid, basis.dwelltime, basis.txfrq, centre_ppm=basis.centre_ppm, id='fit')
  return s, basis, baseline


def test_state_machine() -> None:
  s = advance(FitState.UNFIT, FitState.REFERENCED)
  s = advance(s, FitState.PRELIMINARY_REDUCED)
  s = advance(s, FitState.PRELIMINARY_FULL)
  assert advance(s, FitState.COMPLETE) == FitState.COMPLETE
  assert advance(FitState.REFERENCED, FitState.FAILED) == FitState.FAILED
  with pytest.raises(RuntimeError):
    advance(FitState.UNFIT, FitState.COMPLETE)
  with pytest.raises(RuntimeError):
    advance(FitState.COMPLETE, FitState.REFERENCED)


def test_spline_baseline_is_partition_of_unity() -> None:
  x = np.linspace(0.2, 4.2, 200)
  b = spline_baseline(x, 0.2, 4.2, 0.4)
  assert b.shape == (200, 13)
  assert np.allclose(np.sum(b, axis=1), 1.0)
  assert np.all(b >= 0.0)


def test_failed_sentinel() -> None:
  p = FitParameters.failed(['Cr', 'NAA'], 'diverged')
  assert p.state == FitState.FAILED
  assert not p.ok
  assert np.all(np.isnan(p.amplitudes))
  assert np.isnan(p.ph0)
  assert p.message == 'diverged'
  with pytest.raises(PreconditionError):
    p.amplitude('GABA')


def test_prepare_basis() -> None:
  basis = synthetic_basis(NAMES)
  b = prepare_basis(basis, Options(include=('Cr', 'NAA')))
  assert b.normalised
  assert b.names[:2] == ['Cr', 'NAA']
  assert 'MM09' in b
  assert 'Cho' not in b
  b = prepare_basis(basis, Options(fit_mm=False))
  assert b.names == NAMES
  with pytest.raises(PreconditionError):
    prepare_basis(basis, Options(include=('GABA',)))


def test_fit_recovers_amplitudes_and_baseline(monkeypatch) -> None:
  monkeypatch.setitem(Cfg.val, 'fit_zeropad', 1)
  s, basis, baseline = _synthetic_fit_data()
  rec = Recorder()
  p = fit_spectrum(s, basis, _options(), ref_shift=0.0, progress=rec)
  assert p.ok
  assert p.state == FitState.COMPLETE
  assert list(p.names) == NAMES
  assert np.allclose(p.amplitudes, AMPLITUDES, rtol=0.02)
  assert p.ratio('NAA') == pytest.approx(1.5, rel=0.02)
  assert p.ph0 == pytest.approx(15.0, abs=1.0)
  assert p.gauss_lb == pytest.approx(2.0, abs=0.5)
  assert np.allclose(p.freq_shift, 1.5, atol=0.1)
  assert p.prelim is not None
  assert p.prelim.state == FitState.PRELIMINARY_REDUCED
  assert 'fit' in rec.stages()
  ppm, data, model, base = model_spectrum(s, basis, p, _options())
  idx = (s.ppm_axis() >= 0.2) & (s.ppm_axis() <= 4.2)
  assert np.max(np.abs(base - baseline[idx])) < 0.01 * np.max(np.abs(data))
  assert np.max(np.abs(model - data)) < 0.01 * np.max(np.abs(data))
  assert len(ppm) == len(data)


def test_fit_with_referencing(monkeypatch) -> None:
  monkeypatch.setitem(Cfg.val, 'fit_zeropad', 1)
  s, basis, _ = _synthetic_fit_data(shift=0.0, base_scale=0.0)
  p = fit_spectrum(s.freq_shift(3.0), basis, _options())
  assert p.ok
  assert p.ref_shift == pytest.approx(3.0, abs=0.5)
  assert np.allclose(p.amplitudes, AMPLITUDES, rtol=0.05)


@pytest.mark.parametrize('offset', [25.0, 30.0])
def test_fit_with_large_offset(monkeypatch, offset) -> None:
  # Beyond the 0.1 ppm peak search; found by the landmark cross-correlation
  monkeypatch.setitem(Cfg.val, 'fit_zeropad', 1)
  s, basis, _ = _synthetic_fit_data(shift=0.0, base_scale=0.0)
  p = fit_spectrum(s.freq_shift(offset), basis, _options())
  assert p.ok
  assert p.ref_shift == pytest.approx(offset, abs=1.5)
  assert np.allclose(p.amplitudes, AMPLITUDES, rtol=0.05)


def test_non_finite_data_gives_failed_fit(monkeypatch) -> None:
  monkeypatch.setitem(Cfg.val, 'fit_zeropad', 1)
  s, basis, _ = _synthetic_fit_data()
  fid = s.fid.copy()
  fid[10] = np.nan
  rec = Recorder()
  p = fit_spectrum(s.replace(fid=fid), basis, _options(), ref_shift=0.0, progress=rec)
  assert p.state == FitState.FAILED
  assert np.all(np.isnan(p.amplitudes))
  assert 'failed' in rec.stages()


def test_concatenated_fit_needs_basis_per_condition() -> None:
  s, basis, _ = _synthetic_fit_data()
  with pytest.raises(PreconditionError):
    fit_concatenated({ConditionKind.DIFF1: s, ConditionKind.SUM: s},
                     {ConditionKind.DIFF1: basis}, _options(sequence='mega'))


def test_concatenated_fit_shares_amplitudes(monkeypatch) -> None:
  monkeypatch.setitem(Cfg.val, 'fit_zeropad', 1)
  s, basis, _ = _synthetic_fit_data(ph0=0.0, shift=0.0)
  unnormalised = synthetic_basis(NAMES)
  spectra = {ConditionKind.SUM: s, ConditionKind.DIFF1: s.amp_scale(0.5)}
  half = BasisSet(NAMES, unnormalised.fids * 0.5, unnormalised.dwelltime, unnormalised.txfrq,
                  centre_ppm=unnormalised.centre_ppm)
  bases = {ConditionKind.SUM: unnormalised, ConditionKind.DIFF1: half}
  p = fit_concatenated(spectra, bases, _options(sequence='mega', fit_style='concatenated'),
                       ref_shift=0.0)
  assert p.ok
  assert p.conditions == (ConditionKind.SUM, ConditionKind.DIFF1)
  assert p.baseline.shape[0] == 2
  assert np.allclose(p.amplitudes, AMPLITUDES, rtol=0.05)


def test_water_fit(monkeypatch) -> None:
  monkeypatch.setitem(Cfg.val, 'fit_zeropad', 1)
  fid = singlet_fid([(4.68, 100.0)], 2048, 1/2000, 123.2, 4.68, 4.0)
  s = Spectrum(fid, 1/2000, 123.2, centre_ppm=4.68, condition=ConditionKind.REF)
  p = fit_water(s, _options())
  assert p.ok
  assert p.names == ('H2O',)
  assert p.conditions == (ConditionKind.REF,)
  assert p.amplitudes[0] > 0.0
