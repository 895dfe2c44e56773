# mrsproc/correct.py - MRSProc - eddy-current, water and polarity correction
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Correction stage.

- Eddy-current correction (Klose) with an unsuppressed water reference
- Residual water removal by HSVD with a bounded retry over component counts
- Polarity correction of spectra acquired with inverted landmark peaks
"""

import numpy as np
import scipy.linalg

from mrsproc.cfg import Cfg
from mrsproc.errors import DataInconsistencyError, NumericalFailure, PreconditionError
from mrsproc.signal import TimeDomainSignal
from mrsproc.spectrum import Spectrum


def _ref_fid(ref):
  if isinstance(ref, TimeDomainSignal):
    if ref.averages > 1 or ref.coils > 1 or ref.subspecs > 1:
      raise PreconditionError("Eddy-current reference must be averaged, coil-combined "
                              "and without sub-spectra")
    return ref.data[:,0,0,0]
  return ref.fid


def _apply_time_phase(x, corr):
  if isinstance(x, TimeDomainSignal):
    if x.npts != len(corr):
      raise DataInconsistencyError(f"Eddy-current reference has {len(corr)} samples, "
                                   f"signal {x.npts}")
    return x.with_data(x.data * corr[:,np.newaxis,np.newaxis,np.newaxis])
  if x.npts != len(corr):
    raise DataInconsistencyError(f"Eddy-current reference has {len(corr)} samples, signal {x.npts}")
  return x.replace(fid=x.fid * corr).flagged('ecc')


def ecc_klose(signal, ref):
  """Klose eddy-current correction.

  The unwrapped phase of the reference FID is removed, point by point, from
  both the signal and the reference. Applying it again with the returned
  reference changes nothing, as that reference has zero phase.

  Parameters
  ----------
      signal (TimeDomainSignal or Spectrum): Data to correct
      ref (TimeDomainSignal or Spectrum): Averaged, coil-combined water reference

  Returns
  -------
      tuple: (corrected signal, corrected reference)

  Raises
  ------
      PreconditionError: If the reference still has averages, coils or sub-spectra
      DataInconsistencyError: If sample counts differ
  """
  ref_fid = _ref_fid(ref)
  inph = np.unwrap(np.angle(ref_fid))
  corr = np.exp(-1j * inph)
  return _apply_time_phase(signal, corr), _apply_time_phase(ref, corr)


def _mean_spectrum(x):
  if isinstance(x, TimeDomainSignal):
    fid = np.mean(x.data, axis=(1,2))[:,0]
    return x.to_spectrum(fid=fid)
  return x


def _peak_phase(x, window):
  spec, ppm = _mean_spectrum(x).freq_range(*window)
  if len(spec) == 0:
    raise PreconditionError(f"Window {window} outside spectrum")
  return np.angle(spec[np.argmax(np.abs(spec))])


def ecc_with_check(signal, ref, window=None):
  """Eddy-current correction kept only if it improves the peak phase.

  The phase at the magnitude maximum in window (NAA by default) is compared
  before and after correction; the corrected data is kept if
  2 |phase before| > |phase after|, otherwise the uncorrected data is
  returned.

  Returns
  -------
      tuple: (signal, corrected reference, kept) where kept tells whether
             the correction was applied to the signal
  """
  if window is None:
    window = Cfg.val['ecc_check_window']
  corrected, ref_corrected = ecc_klose(signal, ref)
  ph_before = _peak_phase(signal, window)
  ph_after = _peak_phase(corrected, window)
  if 2.0 * np.abs(ph_before) > np.abs(ph_after):
    return corrected, ref_corrected, True
  return signal, ref_corrected, False


def hsvd(fid, dwelltime, components, rows=None):
  """Decompose a FID into damped complex exponentials (HSVD, Kung's method).

  Parameters
  ----------
      fid (numpy.ndarray): Complex FID
      dwelltime (float): Sampling interval in seconds
      components (int): Number of exponentials
      rows (int, optional): Hankel matrix rows. Defaults to Cfg water_hankel_fraction of the FID

  Returns
  -------
      tuple: (frequencies Hz, damping 1/s, complex amplitudes, time-domain components (N,K))

  Raises
  ------
      NumericalFailure: If the decomposition is not finite
  """
  n = len(fid)
  if rows is None:
    rows = int(Cfg.val['water_hankel_fraction'] * n)
  rows = min(max(rows, components + 1), n - 1)
  if components < 1 or n - rows + 1 < components:
    raise PreconditionError(f"HSVD with {components} components needs more samples than {n}")
  hankel = scipy.linalg.hankel(fid[:rows], fid[rows-1:n])
  try:
    u, _, _ = scipy.linalg.svd(hankel, full_matrices=False)
    uk = u[:,:components]
    z = scipy.linalg.lstsq(uk[:-1,:], uk[1:,:])[0]
    poles = scipy.linalg.eigvals(z)
  except (np.linalg.LinAlgError, ValueError) as e:
    raise NumericalFailure(f"HSVD with {components} components failed: {e}") from e
  with np.errstate(over='ignore', invalid='ignore', divide='ignore'):
    basis = np.exp(np.outer(np.arange(n), np.log(poles)))
  if not np.all(np.isfinite(basis)):
    raise NumericalFailure(f"HSVD with {components} components has diverging components")
  try:
    amps = scipy.linalg.lstsq(basis, fid)[0]
  except (np.linalg.LinAlgError, ValueError) as e:
    raise NumericalFailure(f"HSVD amplitudes with {components} components failed: {e}") from e
  freqs = np.angle(poles) / (2.0 * np.pi * dwelltime)
  damping = -np.log(np.abs(poles)) / dwelltime
  return freqs, damping, amps, basis


def remove_water(spectrum, band=None, components=None, rows=None):
  """Subtract HSVD components with frequencies inside the ppm band.

  Parameters
  ----------
      spectrum (Spectrum): Spectrum to correct
      band (tuple, optional): ppm band of the residual water. Defaults to Cfg water_band
      components (int, optional): HSVD components. Defaults to Cfg water_components
      rows (int, optional): Hankel matrix rows

  Returns
  -------
      Spectrum: Spectrum without the in-band components

  Raises
  ------
      NumericalFailure: If the decomposition or the result is not finite
  """
  if band is None:
    band = Cfg.val['water_band']
  if components is None:
    components = Cfg.val['water_components']
  freqs, _, amps, basis = hsvd(spectrum.fid, spectrum.dwelltime, components, rows)
  ppm = spectrum.centre_ppm + freqs / spectrum.txfrq
  sel = (ppm >= band[0]) & (ppm <= band[1])
  fid = spectrum.fid - basis[:,sel] @ amps[sel]
  if not np.all(np.isfinite(fid)):
    raise NumericalFailure(f"Water removal with {components} components not finite")
  return spectrum.replace(fid=fid).flagged('water_removed')


def _finite(result):
  if isinstance(result, Spectrum):
    return bool(np.all(np.isfinite(result.fid)))
  if isinstance(result, np.ndarray):
    return bool(np.all(np.isfinite(result)))
  return result is not None


def retry_with_degradation(op, params, progress=None, stage='retry'):
  """Run op(p) for p in params until the result is finite.

  Parameters
  ----------
      op (callable): Operation taking one parameter
      params (iterable): Parameters in order of preference (degrading)
      progress (callable, optional): Progress observer (stage, message)
      stage (str, optional): Stage name for progress messages

  Returns
  -------
      tuple: (result, parameter used)

  Raises
  ------
      NumericalFailure: If all parameters fail
  """
  tried = []
  last = None
  for p in params:
    tried.append(p)
    try:
      result = op(p)
    except NumericalFailure as e:
      last = e
    else:
      if _finite(result):
        return result, p
      last = NumericalFailure(f"{stage}: non-finite result with {p}")
    if progress is not None:
      progress(stage, f"retrying, {p} failed")
  raise NumericalFailure(f"{stage}: failed for all of {tried}") from last


def remove_water_with_retry(spectrum, band=None, components=None, components_min=None,
                            progress=None):
  """Water removal, reducing the HSVD component count until the result is finite.

  Starts at components (Cfg water_components) and goes down to
  components_min (Cfg water_components_min); raises NumericalFailure after.

  Returns
  -------
      tuple: (Spectrum, components used)
  """
  if components is None:
    components = Cfg.val['water_components']
  if components_min is None:
    components_min = Cfg.val['water_components_min']
  return retry_with_degradation(lambda k: remove_water(spectrum, band, k),
                                range(components, components_min-1, -1),
                                progress=progress, stage='water')


def polarity_sign(spectrum, window):
  """+1 if the largest real value in window is positive-dominated, -1 otherwise."""
  spec, _ = spectrum.freq_range(*window)
  if len(spec) == 0:
    raise PreconditionError(f"Polarity window {window} outside spectrum")
  resid = np.abs(np.max(np.real(spec))) - np.abs(np.min(np.real(spec)))
  return -1 if resid < 0 else 1


def correct_polarity(spectrum, window):
  """Flip the spectrum if the landmark in window points down.

  Returns
  -------
      tuple: (Spectrum, flipped)
  """
  if polarity_sign(spectrum, window) < 0:
    return spectrum.amp_scale(-1).flagged('polarity_flipped'), True
  return spectrum, False
