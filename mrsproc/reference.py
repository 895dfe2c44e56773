# mrsproc/reference.py - MRSProc - frequency and phase referencing
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Frequency and phase referencing to known landmark resonances.

All referencing functions return the measured offset `shift` in Hz
(observed minus expected position); `apply_reference` removes it. Peak fits
use complex Lorentzian line shapes 1 / (gamma + i (f - f0)), whose
absorption FWHM is 2 gamma.
"""

from dataclasses import replace

import lmfit
import numpy as np

from mrsproc import molecules
from mrsproc.cfg import Cfg
from mrsproc.errors import NumericalFailure

CR_CHO_WINDOW = (2.8, 3.3)
NAA_WINDOW = (1.8, 2.2)
MM_WINDOW = (0.7, 1.1)
LANDMARK_WINDOW = (1.8, 3.4)


def _lorentzian(x, centre, gamma):
  return 1.0 / (gamma + 1j*(x - centre))


def _gamma_prior(spectrum):
  # Half width (Hz) expected at this field strength
  return max(0.5, Cfg.val['linewidth_prior_hz_per_t'] * spectrum.b0 / 2.0)


def apply_reference(spectrum, shift):
  """Remove a referencing offset shift (Hz) and record it in the provenance."""
  s = spectrum.freq_shift(-shift)
  prov = replace(s.provenance, ref_shift=s.provenance.ref_shift + shift)
  return s.replace(provenance=prov).flagged('referenced')


def _fit_magnitude_peaks(spectrum, target_ppm, offsets_ppm, window, search=0.1):
  """Fit the magnitude of Lorentzian peaks sharing shift and width.

  Parameters
  ----------
      spectrum (Spectrum): Spectrum to reference
      target_ppm (float): Expected position of the main peak
      offsets_ppm (list): Offsets of further peaks relative to the main one
      window (tuple): Fit window in ppm
      search (float, optional): Search range for the initial peak location in ppm

  Returns
  -------
      tuple: (shift_hz, fwhm_hz)

  Raises
  ------
      NumericalFailure: If no peak is found or the fit is not finite
  """
  spec, ppm = spectrum.freq_range(*window)
  if len(spec) < 4:
    raise NumericalFailure(f"Referencing window {window} has too few points")
  mag = np.abs(spec)
  x = (ppm - target_ppm) * spectrum.txfrq
  peak, peak_val = spectrum.peak_location(target_ppm, search)
  if peak is None or not np.isfinite(peak):
    raise NumericalFailure(f"No peak near {target_ppm} ppm")
  d0 = (peak - target_ppm) * spectrum.txfrq
  g0 = _gamma_prior(spectrum)
  max_shift = search * spectrum.txfrq * 1.5
  para = lmfit.Parameters()
  para.add('shift', value=d0, min=-max_shift, max=max_shift)
  para.add('gamma', value=g0, min=0.1, max=25.0*g0)
  para.add('amp0', value=peak_val*g0, min=0.0)
  for k in range(len(offsets_ppm)):
    para.add(f'amp{k+1}', value=peak_val*g0, min=0.0)
  para.add('base', value=np.min(mag))
  offsets = [0.0] + [o * spectrum.txfrq for o in offsets_ppm]

  def residual(p):
    v = p.valuesdict()
    model = np.zeros(len(x), dtype=complex)
    for k, o in enumerate(offsets):
      model += v[f'amp{k}'] * _lorentzian(x, v['shift'] + o, v['gamma'])
    return np.abs(model) + v['base'] - mag

  res = lmfit.minimize(residual, para, method='least_squares',
                       max_nfev=Cfg.val['reference_max_nfev'])
  shift = res.params['shift'].value
  gamma = res.params['gamma'].value
  if not (np.isfinite(shift) and np.isfinite(gamma)):
    raise NumericalFailure(f"Referencing fit near {target_ppm} ppm not finite")
  return shift, 2.0 * gamma


def cr_cho_referencing(spectrum):
  """Reference to the Cr (3.027 ppm) and Cho (3.185 ppm) singlets.

  A double Lorentzian with common shift and width is fitted to the magnitude
  spectrum in 2.8-3.3 ppm. If the fit fails, the interpolated Cr magnitude
  maximum is used and the linewidth is unknown (NaN).

  Returns
  -------
      tuple: (shift_hz, fwhm_hz)
  """
  try:
    return _fit_magnitude_peaks(spectrum, molecules.CR_PPM,
                                [molecules.CHO_PPM - molecules.CR_PPM], CR_CHO_WINDOW)
  except NumericalFailure:
    peak, _ = spectrum.peak_location(molecules.CR_PPM, 0.1)
    if peak is None:
      raise
    return (peak - molecules.CR_PPM) * spectrum.txfrq, np.nan


def naa_referencing(spectrum):
  """Reference to the NAA singlet at 2.008 ppm; returns (shift_hz, fwhm_hz)."""
  return _fit_magnitude_peaks(spectrum, molecules.NAA_PPM, [], NAA_WINDOW)


def mm_referencing(spectrum):
  """Reference a metabolite-nulled spectrum to the 0.9 ppm macromolecule peak."""
  return _fit_magnitude_peaks(spectrum, molecules.MM09_PPM, [], MM_WINDOW)


def water_referencing(spectrum, window=None, target=molecules.WATER_PPM):
  """Reference water data by the magnitude maximum inside window.

  The spectrum is zero-padded first to refine the maximum.

  Returns
  -------
      float: shift_hz placing the water maximum at target
  """
  if window is None:
    window = Cfg.val['water_reference_window']
  spec, ppm = spectrum.zeropad(Cfg.val['water_reference_zeropad']).freq_range(*window)
  if len(spec) == 0:
    raise NumericalFailure(f"Water referencing window {window} outside spectrum")
  return (ppm[np.argmax(np.abs(spec))] - target) * spectrum.txfrq


def landmark_reference(spectrum, landmarks, gamma=None, shift=0.0):
  """Magnitude reference spectrum of Lorentzian landmarks on the spectrum's axis.

  Parameters
  ----------
      spectrum (Spectrum): Spectrum defining the frequency axis
      landmarks (list): (ppm, weight) pairs
      gamma (float, optional): Half width in Hz. Defaults to the field prior
      shift (float, optional): Offset of all landmarks in Hz

  Returns
  -------
      numpy.ndarray: Reference values for every point of the axis
  """
  if gamma is None:
    gamma = _gamma_prior(spectrum)
  f = spectrum.freq_axis()
  ref = np.zeros(len(f))
  for ppm, w in landmarks:
    fl = spectrum.hz(ppm) + shift
    ref += w * gamma**2 / (gamma**2 + (f - fl)**2)
  return ref


def landmark_cross_correlation(spectrum, landmarks, window=LANDMARK_WINDOW, max_shift_hz=None):
  """Coarse frequency offset by cross-correlation with synthetic landmarks.

  Parameters
  ----------
      spectrum (Spectrum): Spectrum to reference
      landmarks (list): (ppm, weight) pairs of expected singlets
      window (tuple, optional): ppm window compared. Defaults to (1.8, 3.4)
      max_shift_hz (float, optional): Search range. Defaults to Cfg align_max_shift_hz

  Returns
  -------
      float: shift_hz of the data relative to the landmarks
  """
  if max_shift_hz is None:
    max_shift_hz = Cfg.val['align_max_shift_hz']
  spec, ppm = spectrum.get_f()
  idx = (ppm >= window[0]) & (ppm <= window[1])
  if not np.any(idx):
    raise NumericalFailure(f"Cross-correlation window {window} outside spectrum")
  data = np.abs(spec[idx])
  data = data - np.mean(data)
  df = spectrum.spectral_width / spectrum.npts
  lags = np.arange(-int(np.ceil(max_shift_hz/df)), int(np.ceil(max_shift_hz/df))+1)
  corr = np.array([np.sum(data * landmark_reference(spectrum, landmarks, shift=l*df)[idx])
                   for l in lags])
  k = int(np.argmax(corr))
  d = 0.0
  if 0 < k < len(lags) - 1:
    de = corr[k-1] - 2.0*corr[k] + corr[k+1]
    if np.abs(de) > 0.0:
      d = 0.5 * (corr[k-1] - corr[k+1]) / de
  return (lags[k] + d) * df


def has_cr_cho(spectrum, fraction=None):
  """True if the Cr/Cho window holds a peak of at least fraction of the 1.8-3.4 ppm maximum."""
  if fraction is None:
    fraction = Cfg.val['phase_cr_cho_min_fraction']
  crcho, _ = spectrum.freq_range(*CR_CHO_WINDOW)
  metab, _ = spectrum.freq_range(*LANDMARK_WINDOW)
  if len(crcho) == 0 or len(metab) == 0:
    return False
  peak = np.max(np.abs(metab))
  return bool(np.isfinite(peak) and peak > 0.0 and np.max(np.abs(crcho)) >= fraction * peak)


def phase_cr_cho(spectrum):
  """Zero-order phase from a complex double Lorentzian fit to Cr and Cho.

  Returns
  -------
      tuple: (phased Spectrum, phase removed in degrees)

  Raises
  ------
      NumericalFailure: If there is no Cr/Cho signal to phase on, or the fit is not finite
  """
  if not has_cr_cho(spectrum):
    raise NumericalFailure("No Cr/Cho signal to phase on")
  shift, fwhm = cr_cho_referencing(spectrum)
  spec, ppm = spectrum.freq_range(*CR_CHO_WINDOW)
  x = (ppm - molecules.CR_PPM) * spectrum.txfrq
  delta = (molecules.CHO_PPM - molecules.CR_PPM) * spectrum.txfrq
  g0 = fwhm / 2.0 if np.isfinite(fwhm) else _gamma_prior(spectrum)
  i0 = np.argmin(np.abs(x - shift))
  para = lmfit.Parameters()
  para.add('phase', value=np.angle(spec[i0]), min=-2.0*np.pi, max=2.0*np.pi)
  para.add('shift', value=shift, min=shift-5.0, max=shift+5.0)
  para.add('gamma', value=g0, min=0.1, max=10.0*g0)
  para.add('amp_cr', value=np.abs(spec[i0])*g0, min=0.0)
  para.add('amp_cho', value=np.abs(spec[i0])*g0, min=0.0)
  para.add('base_re', value=0.0)
  para.add('base_im', value=0.0)

  def residual(p):
    v = p.valuesdict()
    model = np.exp(1j*v['phase']) * (v['amp_cr'] * _lorentzian(x, v['shift'], v['gamma']) +
                                     v['amp_cho'] * _lorentzian(x, v['shift'] + delta, v['gamma'])) \
            + v['base_re'] + 1j*v['base_im']
    r = model - spec
    return np.concatenate((np.real(r), np.imag(r)))

  res = lmfit.minimize(residual, para, method='least_squares',
                       max_nfev=Cfg.val['reference_max_nfev'])
  phase = res.params['phase'].value
  if not np.isfinite(phase):
    raise NumericalFailure("Cr/Cho phase fit not finite")
  phase_deg = np.degrees(np.angle(np.exp(1j*phase)))
  return spectrum.add_phase(-phase_deg).flagged('phased'), phase_deg


REFERENCE_LANDMARKS = [(molecules.CR_PPM, 1.0), (molecules.CHO_PPM, 1.0), (molecules.NAA_PPM, 1.0)]


def reference_landmarks(spectrum, landmarks=None):
  """Metabolite referencing: coarse cross-correlation, then a peak fit.

  The coarse offset against the landmarks (Cr, Cho and NAA by default) is
  refined by a Lorentzian fit to NAA if its magnitude exceeds that of Cr/Cho,
  otherwise by the Cr/Cho double Lorentzian.

  Returns
  -------
      tuple: (shift_hz, fwhm_hz)
  """
  if landmarks is None:
    landmarks = REFERENCE_LANDMARKS
  coarse = landmark_cross_correlation(spectrum, landmarks)
  s = spectrum.freq_shift(-coarse)
  naa, _ = s.freq_range(*NAA_WINDOW)
  crcho, _ = s.freq_range(*CR_CHO_WINDOW)
  if len(naa) > 0 and len(crcho) > 0 and np.max(np.abs(naa)) > np.max(np.abs(crcho)):
    shift, width = naa_referencing(s)
  else:
    shift, width = cr_cho_referencing(s)
  return coarse + shift, width
