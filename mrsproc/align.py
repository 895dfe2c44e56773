# mrsproc/align.py - MRSProc - alignment and averaging of transients
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Alignment and weighted averaging of MRS transients.

Robust spectral registration:
1. Initial frequency guesses from packages of ~10% of the transients,
   each cross-correlated against synthetic landmark singlets.
2. Iterative registration of every transient to the weighted average of
   all corrected transients (frequency and zero-order phase, fitted on the
   first part of the FID). Weights decrease with the residual distance to
   that average, lie in (0,1] and have maximum 1.
3. Weighted averaging of the corrected transients.
4. Landmark (Cr) position per transient before and after correction as
   frequency drift trace.
"""

from dataclasses import replace

import lmfit
import numpy as np

from mrsproc import molecules
from mrsproc.cfg import Cfg
from mrsproc.reference import landmark_cross_correlation
from mrsproc.spectrum import Provenance, npfft, peak_location

# Landmarks (ppm, weight) for the initial guess
LANDMARKS_UNEDITED = [(molecules.CR_PPM, 1.0), (molecules.CHO_PPM, 1.0)]
LANDMARKS_EDITED = [(molecules.CR_PPM, 1.0), (molecules.CHO_PPM, 1.0), (molecules.NAA_PPM, 1.0)]


def _drift(fids, template):
  # Landmark position per transient in ppm (NaN if not found)
  ppm = template.ppm_axis()
  half = (Cfg.val['drift_window'][1] - Cfg.val['drift_window'][0]) / 2.0
  drift = np.full(fids.shape[1], np.nan)
  for k in range(fids.shape[1]):
    spec = npfft.fftshift(npfft.fft(fids[:,k]))
    loc, _ = peak_location(spec, ppm, Cfg.val['drift_landmark_ppm'], half)
    if loc is not None:
      drift[k] = loc
  return drift


def package_initial_guess(fids, template, landmarks, fraction=None):
  """Initial frequency offsets (Hz) of the transients from averaged packages.

  Parameters
  ----------
      fids (numpy.ndarray): Transients, shape (time, average)
      template (Spectrum): Spectrum providing metadata for the packages
      landmarks (list): (ppm, weight) pairs for the cross-correlation
      fraction (float, optional): Package size as fraction of the averages

  Returns
  -------
      numpy.ndarray: Observed offset per transient in Hz
  """
  if fraction is None:
    fraction = Cfg.val['align_package_fraction']
  averages = fids.shape[1]
  size = max(1, int(round(averages * fraction)))
  guess = np.zeros(averages)
  for start in range(0, averages, size):
    # The last package takes the remaining averages
    stop = min(averages, start + size)
    package = template.replace(fid=np.mean(fids[:,start:stop], axis=1))
    guess[start:stop] = landmark_cross_correlation(package, landmarks)
  return guess


def _register(fid, target, t, f0, max_shift):
  # Frequency (Hz) and phase (rad) such that fid * exp(i(2 pi f t + ph)) ~ target;
  # NaN for non-finite input
  if not (np.all(np.isfinite(fid)) and np.all(np.isfinite(target))):
    return np.nan, np.nan
  shifted = fid * np.exp(2j*np.pi*f0*t)
  p0 = np.angle(np.sum(target * np.conj(shifted)))
  para = lmfit.Parameters()
  para.add('f', value=f0, min=f0-max_shift, max=f0+max_shift)
  para.add('ph', value=p0, min=p0-2.0*np.pi, max=p0+2.0*np.pi)

  def residual(p):
    v = p.valuesdict()
    r = fid * np.exp(1j*(2.0*np.pi*v['f']*t + v['ph'])) - target
    return np.concatenate((np.real(r), np.imag(r)))

  res = lmfit.minimize(residual, para, method='leastsq', max_nfev=Cfg.val['align_max_nfev'])
  return res.params['f'].value, res.params['ph'].value


def _weights(corrected, target, m):
  r = np.linalg.norm(corrected[:m,:] - target[:m,np.newaxis], axis=0)
  r = np.maximum(r, Cfg.val['num_eps'])
  return (np.min(r) / r)**2, r


def robust_spectral_registration(signal, subspec=0, landmarks=None, initial=None,
                                 condition=None, progress=None):
  """Align and average the transients of one sub-spectrum.

  Parameters
  ----------
      signal (TimeDomainSignal): Coil-combined signal
      subspec (int, optional): Sub-spectrum to process. Defaults to 0
      landmarks (list, optional): (ppm, weight) pairs for the initial guess.
          Defaults to Cr and Cho
      initial (array-like, optional): Observed frequency offsets per transient (Hz);
          computed from averaged packages if not given
      condition (ConditionKind, optional): Condition of the result
      progress (callable, optional): Progress observer (stage, message)

  Returns
  -------
      Spectrum: Weighted average with fs, phs, weights and drift in its provenance
  """
  fids = signal.fids(subspec)
  averages = fids.shape[1]
  if signal.averaged or averages == 1:
    spec = signal.average(subspec=subspec)
    drift = _drift(spec.fid[:,np.newaxis], spec)
    prov = Provenance(fs=np.zeros(averages), phs=np.zeros(averages), weights=np.ones(averages),
                      drift_pre=drift, drift_post=drift.copy())
    return spec.replace(provenance=prov, condition=condition)
  if landmarks is None:
    landmarks = LANDMARKS_UNEDITED
  template = signal.to_spectrum(fid=fids[:,0], condition=condition)
  t = np.arange(signal.npts) * signal.dwelltime
  m = min(signal.npts, max(16, int(Cfg.val['align_time_window'] / signal.dwelltime)))
  if initial is None:
    initial = package_initial_guess(fids, template, landmarks)
  initial = np.asarray(initial, dtype=float)
  if initial.shape != (averages,):
    raise RuntimeError(f"Need {averages} initial frequency offsets, got {initial.shape}")
  max_shift = Cfg.val['align_max_shift_hz']
  # Only relative offsets; the absolute frequency is set by referencing
  coarse_fs = -(initial - np.median(initial))
  fs = coarse_fs.copy()
  phs = np.zeros(averages)
  weights = np.ones(averages)
  corrected = fids * np.exp(2j*np.pi*np.outer(t, fs))
  best = None
  degraded = False
  for it in range(Cfg.val['align_max_iterations']):
    target = corrected @ weights / np.sum(weights)
    new_fs = np.zeros(averages)
    new_phs = np.zeros(averages)
    for k in range(averages):
      new_fs[k], new_phs[k] = _register(fids[:m,k], target[:m], t[:m], fs[k], max_shift)
    if not (np.all(np.isfinite(new_fs)) and np.all(np.isfinite(new_phs))):
      degraded = True
      break
    corrected = fids * np.exp(1j*(2.0*np.pi*np.outer(t, new_fs) + new_phs[np.newaxis,:]))
    target = corrected @ weights / np.sum(weights)
    new_weights, r = _weights(corrected, target, m)
    cost = np.sum(new_weights * r**2) / np.sum(new_weights)
    if best is None or cost < best[0]:
      best = (cost, new_fs.copy(), new_phs.copy(), new_weights.copy())
    change = np.max(np.abs(new_fs - fs))
    fs, phs, weights = new_fs, new_phs, new_weights
    if Cfg.dev('align_trace') and progress is not None:
      progress('align', f"pass {it+1}: max update {change:.4f} Hz, cost {cost:.4g}")
    if change < Cfg.val['align_tolerance_hz']:
      break
  if degraded or best is None:
    # Fall back to the coarse cross-correlation estimate
    finite = np.all(np.isfinite(fids), axis=0)
    fs, phs = coarse_fs, np.zeros(averages)
    weights = finite.astype(float) if np.any(finite) else np.ones(averages)
    if progress is not None:
      progress('align', f"{signal.id}: registration failed, using coarse frequency estimate")
    degraded = True
  else:
    _, fs, phs, weights = best
  corrected = fids * np.exp(1j*(2.0*np.pi*np.outer(t, fs) + phs[np.newaxis,:]))
  use = weights > 0.0
  fid = corrected[:,use] @ weights[use] / np.sum(weights[use])
  phs_deg = np.degrees(phs)
  prov = Provenance(fs=fs, phs=phs_deg, weights=weights / np.max(weights),
                    drift_pre=_drift(fids, template), drift_post=_drift(corrected, template))
  prov = prov.flag('aligned', 'averaged')
  if degraded:
    prov = prov.flag('alignment_degraded')
  return template.replace(fid=fid, provenance=prov)


def align_averages(signal, subspec=0, condition=None):
  """Single-pass frequency and phase alignment to the plain mean, then plain average.

  Used for water reference, short-TE water and metabolite-nulled data where
  robust weighting is not needed.
  """
  fids = signal.fids(subspec)
  averages = fids.shape[1]
  if signal.averaged or averages == 1:
    spec = signal.average(subspec=subspec)
    return spec.replace(condition=condition, provenance=Provenance(
      fs=np.zeros(averages), phs=np.zeros(averages), weights=np.ones(averages)))
  t = np.arange(signal.npts) * signal.dwelltime
  m = min(signal.npts, max(16, int(Cfg.val['align_time_window'] / signal.dwelltime)))
  target = np.mean(fids, axis=1)
  fs = np.zeros(averages)
  phs = np.zeros(averages)
  for k in range(averages):
    fs[k], phs[k] = _register(fids[:m,k], target[:m], t[:m], 0.0, Cfg.val['align_max_shift_hz'])
  if not (np.all(np.isfinite(fs)) and np.all(np.isfinite(phs))):
    fs = np.zeros(averages)
    phs = np.zeros(averages)
  corrected = fids * np.exp(1j*(2.0*np.pi*np.outer(t, fs) + phs[np.newaxis,:]))
  spec = signal.to_spectrum(fid=np.mean(corrected, axis=1), condition=condition)
  prov = replace(spec.provenance, fs=fs, phs=np.degrees(phs), weights=np.ones(averages))
  return spec.replace(provenance=prov.flag('aligned', 'averaged'))


def drift_summary(spectrum):
  """Mean deviation of the landmark trace from 3.02 ppm before and after alignment (ppm)."""
  pre = spectrum.provenance.drift_pre
  post = spectrum.provenance.drift_post
  if len(pre) == 0:
    return np.nan, np.nan
  return np.nanmean(pre - 3.02), np.nanmean(post - 3.02)
