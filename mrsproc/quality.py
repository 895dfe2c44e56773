# mrsproc/quality.py - MRSProc - quality metrics
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Quality metrics of processed spectra and their batch summary."""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from mrsproc.align import drift_summary
from mrsproc.cfg import Cfg
from mrsproc.errors import NumericalFailure, PreconditionError


def snr(spectrum, window, noise=None):
  """Signal-to-noise ratio.

  The maximum of the real spectrum in window divided by the standard
  deviation of the linearly detrended real spectrum in the noise window.

  Parameters
  ----------
      spectrum (Spectrum): Processed spectrum
      window (tuple): Signal window (low, high) in ppm
      noise (tuple, optional): Noise window in ppm. Defaults to Cfg quality_noise_window

  Returns
  -------
      float: SNR (inf for noise-free spectra)

  Raises
  ------
      PreconditionError: If a window is outside the spectrum
      NumericalFailure: If the spectrum is not finite or the noise fit fails
  """
  if noise is None:
    noise = Cfg.val['quality_noise_window']
  sig, _ = spectrum.freq_range(*window)
  nspec, nppm = spectrum.freq_range(*noise)
  if len(sig) == 0:
    raise PreconditionError(f"SNR signal window {window} outside spectrum")
  if len(nspec) < 3:
    raise PreconditionError(f"SNR noise window {noise} outside spectrum")
  re = np.real(nspec)
  if not (np.all(np.isfinite(re)) and np.all(np.isfinite(sig))):
    raise NumericalFailure("SNR of a non-finite spectrum")
  try:
    trend = np.polyval(np.polyfit(nppm, re, 1), nppm)
  except np.linalg.LinAlgError as e:
    raise NumericalFailure(f"SNR noise detrending failed: {e}") from e
  sd = np.std(re - trend)
  peak = np.max(np.real(sig))
  if sd <= Cfg.val['num_eps'] * np.abs(peak):
    return np.inf
  return peak / sd


def fwhm(spectrum, window, zeropad=None):
  """Full width at half maximum of the largest real peak in window.

  The spectrum is zero-padded and the half-maximum crossings on both sides
  of the peak are linearly interpolated.

  Returns
  -------
      tuple: (fwhm_hz, fwhm_ppm), (nan, nan) if a crossing is not found in window
  """
  if zeropad is None:
    zeropad = Cfg.val['quality_zeropad']
  spec, ppm = spectrum.zeropad(zeropad).freq_range(*window)
  if len(spec) == 0:
    raise PreconditionError(f"FWHM window {window} outside spectrum")
  re = np.real(spec)
  k = int(np.argmax(re))
  half = re[k] / 2.0
  if half <= 0.0:
    return np.nan, np.nan
  left = None
  for i in range(k - 1, -1, -1):
    if re[i] <= half:
      left = ppm[i] + (half - re[i]) / (re[i+1] - re[i]) * (ppm[i+1] - ppm[i])
      break
  right = None
  for i in range(k + 1, len(re)):
    if re[i] <= half:
      right = ppm[i-1] + (re[i-1] - half) / (re[i-1] - re[i]) * (ppm[i] - ppm[i-1])
      break
  if left is None or right is None:
    return np.nan, np.nan
  width = right - left
  return width * spectrum.txfrq, width


@dataclass(frozen=True)
class QualityMetrics:
  """Quality of one processed spectrum.

  Attributes
  ----------
      dataset (int): Index of the dataset in its batch
      condition (str): Condition name
      snr (float): Signal-to-noise ratio
      fwhm_hz (float): Linewidth in Hz
      fwhm_ppm (float): Linewidth in ppm
      drift_pre (float): Mean landmark deviation from 3.02 ppm before alignment
      drift_post (float): Mean landmark deviation from 3.02 ppm after alignment
      window (tuple): ppm window of the measured peak
  """
  dataset: int
  condition: str
  snr: float
  fwhm_hz: float
  fwhm_ppm: float
  drift_pre: float = np.nan
  drift_post: float = np.nan
  window: Optional[tuple] = None


def measure(spectrum, window, dataset=0, condition=None):
  """QualityMetrics of spectrum with the peak in window."""
  if condition is None:
    condition = 'A' if spectrum.condition is None else spectrum.condition.name
  hz, ppm = fwhm(spectrum, window)
  pre, post = drift_summary(spectrum)
  return QualityMetrics(dataset=dataset, condition=condition, snr=float(snr(spectrum, window)),
                        fwhm_hz=float(hz), fwhm_ppm=float(ppm), drift_pre=float(pre),
                        drift_post=float(post), window=tuple(window))


@dataclass
class QualityReport:
  """Overview of a batch: per-condition statistics and failed datasets.

  Attributes
  ----------
      metrics (list): QualityMetrics of all processed spectra
      failed (list): (dataset index, dataset id, message) of failed datasets or stages
  """
  metrics: list = field(default_factory=list)
  failed: list = field(default_factory=list)

  def add(self, metrics):
    self.metrics.extend(metrics)

  def add_failure(self, dataset, id, message):
    self.failed.append((dataset, id, message))

  def conditions(self):
    names = []
    for m in self.metrics:
      if m.condition not in names:
        names.append(m.condition)
    return names

  def summary(self):
    """condition -> {'snr': (mean, sd), 'fwhm_hz': (mean, sd), 'n': count} over finite values."""
    out = {}
    for c in self.conditions():
      ms = [m for m in self.metrics if m.condition == c]
      stats = {'n': len(ms)}
      for key in ('snr', 'fwhm_hz'):
        v = np.array([getattr(m, key) for m in ms], dtype=float)
        v = v[np.isfinite(v)]
        stats[key] = (float(np.mean(v)), float(np.std(v))) if len(v) > 0 else (np.nan, np.nan)
      out[c] = stats
    return out

  def lines(self):
    lines = []
    for c, s in self.summary().items():
      lines.append(f"{c}: n={s['n']} SNR {s['snr'][0]:.1f}+-{s['snr'][1]:.1f} "
                   f"FWHM {s['fwhm_hz'][0]:.2f}+-{s['fwhm_hz'][1]:.2f} Hz")
    for dataset, id, message in self.failed:
      lines.append(f"failed {dataset} ({id}): {message}")
    return lines
