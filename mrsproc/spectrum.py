# mrsproc/spectrum.py - MRSProc - processed spectrum
#
# SPDX-FileCopyrightText: Copyright (C) 2019 Max Chandler, PhD student at Cardiff University
# SPDX-FileCopyrightText: Copyright (C) 2020-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-FileCopyrightText: Copyright (C) 2022-2024 Zien Ma, PhD student at Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Single combined MRS signal and the spectral primitives working on it.

A Spectrum holds one complex FID with its acquisition metadata and the
provenance of the processing applied so far. Spectra are never modified in
place; every operation returns a new Spectrum.

Conventions: spec = fftshift(fft(fid)), frequency axis
f_k = (k - N/2) * sw / N in Hz, ppm = centre_ppm + f / txfrq. A resonance at
p ppm therefore has the FID frequency (p - centre_ppm) * txfrq Hz, and ppm
increases with the index.
"""

import copy
import json
from dataclasses import dataclass, field, replace

import numpy as np

from mrsproc import molecules
from mrsproc.cfg import Cfg
from mrsproc.conditions import ConditionKind

npfft = getattr(__import__(Cfg.val['npfft_module'][0], fromlist=[Cfg.val['npfft_module'][1]]),
                Cfg.val['npfft_module'][1])


@dataclass(frozen=True)
class Provenance:
  """Processing history carried along with a spectrum.

  Attributes
  ----------
      fs (numpy.ndarray): Per-average frequency corrections (Hz)
      phs (numpy.ndarray): Per-average phase corrections (degrees)
      weights (numpy.ndarray): Per-average averaging weights, max 1
      drift_pre (numpy.ndarray): Landmark position per average before alignment (ppm)
      drift_post (numpy.ndarray): Landmark position per average after alignment (ppm)
      ref_shift (float): Cumulative referencing shift removed (Hz)
      order_switched (bool): Sub-spectra were re-ordered by the edit classifier
      flags (frozenset): Processing steps applied
      failed (tuple): (stage, message) pairs of stages that failed
  """
  fs: np.ndarray = field(default_factory=lambda: np.zeros(1))
  phs: np.ndarray = field(default_factory=lambda: np.zeros(1))
  weights: np.ndarray = field(default_factory=lambda: np.ones(1))
  drift_pre: np.ndarray = field(default_factory=lambda: np.zeros(0))
  drift_post: np.ndarray = field(default_factory=lambda: np.zeros(0))
  ref_shift: float = 0.0
  order_switched: bool = False
  flags: frozenset = frozenset()
  failed: tuple = ()

  def flag(self, *names):
    return replace(self, flags=self.flags | frozenset(names))

  def fail(self, stage, message):
    return replace(self, failed=(*self.failed, (stage, message)))


class Spectrum:
  """Single (combined) MRS signal.

  Attributes
  ----------
      fid (numpy.ndarray): Complex time-domain samples
      dwelltime (float): Sampling interval in seconds
      txfrq (float): Transmitter (Larmor) frequency in MHz
      centre_ppm (float): Chemical shift of the receiver centre frequency
      b0 (float): Field strength in Tesla
      te (float, optional): Echo time in ms
      tr (float, optional): Repetition time in ms
      id (str, optional): Dataset identifier
      condition (ConditionKind, optional): Condition this spectrum represents
      provenance (Provenance): Processing history
  """

  def __init__(self, fid, dwelltime, txfrq, centre_ppm=None, b0=None, te=None, tr=None,
               id=None, condition=None, provenance=None):
    self.fid = np.asarray(fid, dtype=complex)
    if self.fid.ndim != 1:
      raise RuntimeError(f"Spectrum needs a 1-D FID, got shape {self.fid.shape}")
    self.dwelltime = float(dwelltime)
    self.txfrq = float(txfrq)
    self.centre_ppm = Cfg.val['centre_ppm'] if centre_ppm is None else float(centre_ppm)
    self.b0 = self.txfrq / molecules.GYROMAGNETIC_RATIO if b0 is None else float(b0)
    self.te = te
    self.tr = tr
    self.id = id
    self.condition = condition
    self.provenance = Provenance() if provenance is None else provenance

  @property
  def npts(self):
    return len(self.fid)

  @property
  def spectral_width(self):
    return 1.0 / self.dwelltime

  def replace(self, **kwargs):
    """Copy of this spectrum with some attributes replaced."""
    s = copy.copy(self)
    for k, v in kwargs.items():
      if not hasattr(s, k):
        raise RuntimeError(f"Unknown spectrum attribute {k}")
      setattr(s, k, np.asarray(v, dtype=complex) if k == 'fid' else v)
    return s

  def flagged(self, *names):
    return self.replace(provenance=self.provenance.flag(*names))

  def get_f(self):
    """Get frequency domain data.

    Returns
    -------
        tuple: (spec, ppm) spectrum and matching ppm axis
    """
    return npfft.fftshift(npfft.fft(self.fid)), self.ppm_axis()

  def get_t(self):
    """Get time domain data.

    Returns
    -------
        tuple: (fid, t) samples and time axis in seconds
    """
    return self.fid, np.arange(self.npts) * self.dwelltime

  def freq_axis(self):
    return npfft.fftshift(npfft.fftfreq(self.npts, self.dwelltime))

  def ppm_axis(self):
    return self.centre_ppm + self.freq_axis() / self.txfrq

  def hz(self, ppm):
    """Frequency offset (Hz) from the receiver centre of a chemical shift."""
    return (ppm - self.centre_ppm) * self.txfrq

  def freq_range(self, low_ppm, high_ppm):
    """Spectrum values inside a ppm window.

    Returns
    -------
        tuple: (spec, ppm) restricted to low_ppm <= ppm <= high_ppm
    """
    spec, ppm = self.get_f()
    idx = (ppm >= low_ppm) & (ppm <= high_ppm)
    return spec[idx], ppm[idx]

  def freq_shift(self, hz):
    """Shift all resonances by hz (positive moves them to higher ppm)."""
    _, t = self.get_t()
    return self.replace(fid=self.fid * np.exp(2j * np.pi * hz * t))

  def add_phase(self, ph0, ph1=0.0):
    """Add zero-order (degrees) and first-order (degrees/ppm about centre_ppm) phase."""
    if ph1 == 0.0:
      return self.replace(fid=self.fid * np.exp(1j * np.pi * ph0 / 180.0))
    spec, ppm = self.get_f()
    spec = spec * np.exp(1j * np.pi / 180.0 * (ph0 + ph1 * (ppm - self.centre_ppm)))
    return self.replace(fid=npfft.ifft(npfft.ifftshift(spec)))

  def amp_scale(self, a):
    return self.replace(fid=self.fid * a)

  def dc_correct(self, percentage=None):
    """Remove a constant offset from the spectrum.

    The offset is the mean of the outer `percentage` percent of the spectrum
    (half at each edge), where no resonances are expected.
    """
    if percentage is None:
      percentage = Cfg.val['dc_correct_percentage']
    spec, _ = self.get_f()
    pts = max(1, int(round(self.npts * percentage / 200.0)))
    offset = np.mean(np.concatenate((spec[:pts], spec[-pts:])))
    return self.replace(fid=npfft.ifft(npfft.ifftshift(spec - offset))).flagged('dc_corrected')

  def zeropad(self, factor):
    """Append zeros to factor times the current number of samples."""
    factor = int(factor)
    if factor < 1:
      raise RuntimeError(f"Zero-padding factor must be >= 1, got {factor}")
    if factor == 1:
      return self
    return self.replace(fid=np.concatenate((self.fid, np.zeros(self.npts * (factor-1), dtype=complex))))

  def peak_location(self, location, ppm_range):
    """Find the magnitude peak near location.

    Parameters
    ----------
        location (float): Expected peak location in ppm
        ppm_range (float): Search range around location in ppm

    Returns
    -------
        tuple: (peak_location, peak_value) or (None, None) if not found
    """
    spec, ppm = self.get_f()
    return peak_location(spec, ppm, location, ppm_range)

  @staticmethod
  def combs(fs, ss, id=None, condition=None):
    """Combine multiple spectra with weighted sum.

    Parameters
    ----------
        fs (list): List of weights for spectra
        ss (list): List of Spectrum objects
        id (str, optional): ID for the combined spectrum (default: id of first spectrum)
        condition (ConditionKind, optional): Condition of the combined spectrum

    Returns
    -------
        Spectrum: Combined spectrum

    Raises
    ------
        RuntimeError: If spectra have incompatible properties
    """
    if len(fs) != len(ss) or len(ss) == 0:
      raise RuntimeError("Combining spectra needs one weight per spectrum")
    for n in range(1,len(ss)):
      if ss[0].npts != ss[n].npts:
        raise RuntimeError("Combining spectra with different number of samples")
      if np.abs(ss[0].dwelltime - ss[n].dwelltime) >= Cfg.val['num_eps'] * ss[0].dwelltime:
        raise RuntimeError("Combining spectra with different dwell times")
      if np.abs(ss[0].txfrq - ss[n].txfrq) >= Cfg.val['num_eps'] * ss[0].txfrq:
        raise RuntimeError("Combining spectra with different transmitter frequencies")
    fid = fs[0] * ss[0].fid
    for n in range(1,len(ss)):
      if ss[0].centre_ppm != ss[n].centre_ppm:
        # Align receiver centres via time-domain frequency shift
        fid = fid + fs[n] * ss[n].freq_shift((ss[n].centre_ppm - ss[0].centre_ppm) * ss[n].txfrq).fid
      else:
        fid = fid + fs[n] * ss[n].fid
    prov = replace(ss[0].provenance,
                   order_switched=any(s.provenance.order_switched for s in ss),
                   flags=frozenset().union(*[s.provenance.flags for s in ss]),
                   failed=tuple(f for s in ss for f in s.provenance.failed))
    return ss[0].replace(fid=fid, id=ss[0].id if id is None else id, condition=condition,
                         provenance=prov)

  def to_json(self, filename=None, version=1):
    """Serialise spectrum; written to filename if given, otherwise returned as dict."""
    if version == 1:
      data = {
        'id': self.id,
        'condition': None if self.condition is None else self.condition.value,
        'dwelltime': self.dwelltime,
        'txfrq': self.txfrq,
        'centre_ppm': self.centre_ppm,
        'b0': self.b0,
        'te': self.te,
        'tr': self.tr,
        'fid': [(float(np.real(v)),float(np.imag(v))) for v in self.fid],
        'ref_shift': self.provenance.ref_shift,
        'order_switched': self.provenance.order_switched,
        'flags': sorted(self.provenance.flags),
        'mrsproc_json_format': 1
      }
    else:
      raise RuntimeError(f"Unknown json format version {version}")
    if filename is None:
      return data
    with open(filename, 'w', encoding='utf-8') as f:
      json.dump(data, f, ensure_ascii=False, indent=2)
    return data

  @staticmethod
  def from_json(data):
    """Spectrum from a dict (or json filename) written by to_json."""
    if isinstance(data, str):
      with open(data, encoding='utf-8') as f:
        data = json.load(f)
    if data.get('mrsproc_json_format', None) != 1:
      raise RuntimeError("Unknown spectrum json format")
    fid = np.array([complex(re, im) for re, im in data['fid']])
    prov = Provenance(ref_shift=data['ref_shift'], order_switched=data['order_switched'],
                      flags=frozenset(data['flags']))
    return Spectrum(fid, data['dwelltime'], data['txfrq'], centre_ppm=data['centre_ppm'],
                    b0=data['b0'], te=data['te'], tr=data['tr'], id=data['id'],
                    condition=None if data['condition'] is None else ConditionKind.parse(data['condition']),
                    provenance=prov)

  def plot(self, axes, mode='real', ppm_range=(0.0, 5.0), **kwargs):
    """Plot spectrum on given axes.

    Parameters
    ----------
        axes: Matplotlib axes object
        mode (str, optional): 'real', 'imaginary', 'magnitude' or 'phase'. Defaults to 'real'
        ppm_range (tuple, optional): Displayed ppm window. Defaults to (0, 5)
    """
    Y, X = self.freq_range(*ppm_range)  # noqa: N806
    if mode == 'magnitude':
      Y = np.abs(Y)  # noqa: N806
      axes.set_ylabel('Magn.')
    elif mode == 'phase':
      Y = np.angle(Y)  # noqa: N806
      axes.set_ylabel('Phase')
    elif mode == 'real':
      Y = np.real(Y)  # noqa: N806
      axes.set_ylabel('Re')
    elif mode == 'imaginary':
      Y = np.imag(Y)  # noqa: N806
      axes.set_ylabel('Im')
    else:
      raise RuntimeError("Unknown plot mode "+mode)
    axes.plot(X, Y, **kwargs)
    axes.set_xlabel('Chemical shift (ppm)')
    if not axes.xaxis_inverted():
      axes.invert_xaxis()


def peak_location(spec, ppm, location, ppm_range):
  """Sub-bin location of the largest magnitude value within location +- ppm_range.

  Parameters
  ----------
      spec (numpy.ndarray): Complex spectrum
      ppm (numpy.ndarray): Increasing ppm axis of spec
      location (float): Expected peak location in ppm
      ppm_range (float): Search range around location in ppm

  Returns
  -------
      tuple: (peak_location, peak_value) or (None, None) if the window is empty
  """
  window = np.nonzero(np.abs(ppm - location) < ppm_range)[0]
  if len(window) == 0:
    return None, None
  mag = np.abs(spec)
  idx = window[np.argmax(mag[window])]
  peak_val = mag[idx]
  # BG Quinn, EJ Hannan. The Estimation and Tracking of Frequency, 2001.
  # https://dspguru.com/dsp/howtos/how-to-interpolate-fft-peak/
  estimator = Cfg.val['fft_peak_location_estimator']
  if estimator is None or idx < 1 or idx >= len(ppm) - 1:
    return ppm[idx], peak_val # at boundary
  if estimator == 'quadratic':
    y1, y2, y3 = mag[idx-1], mag[idx], mag[idx+1]
    de = 2.0 * (2.0*y2 - y1 - y3)
    if np.abs(de) < 1e-10:
      return ppm[idx], peak_val # zero denominator, return bucket freq.
    d = (y3-y1) / de
  elif estimator == 'quinn2':
    # Quinn's second estimator (least RMS error)
    de = (spec[idx].real**2 + spec[idx].imag**2)
    if np.abs(de) < 1e-10:
      return ppm[idx], peak_val
    ap = (spec[idx+1].real*spec[idx].real + spec[idx+1].imag*spec[idx].imag) / de
    dp = -ap / (1-ap)
    am = (spec[idx-1].real*spec[idx].real + spec[idx-1].imag*spec[idx].imag) / de
    dm = am / (1-am)
    dp2 = dp**2
    dm2 = dm**2
    f1 = np.sqrt(6.0)/24.0
    f2 = np.sqrt(2.0/3.0)
    tau_dp2 = np.log(3.0*(dp2**2)+6.0*dp2+1)/4.0 - f1*np.log((dp2+1.0-f2)/(dp2+1.0+f2))
    tau_dm2 = np.log(3.0*(dm2**2)+6.0*dm2+1)/4.0 - f1*np.log((dm2+1.0-f2)/(dm2+1.0+f2))
    d = -1.0 * ((dp+dm)/2.0 + tau_dp2 - tau_dm2)
  elif estimator == 'jain':
    y1, y2, y3 = mag[idx-1], mag[idx], mag[idx+1]
    if y1 > y3:
      a = y2/y1
      idx -= 1
    else:
      a = y3/y2
    d = a/(1.0+a)
  else:
    raise RuntimeError(f"Unknown fft peak location estimator {estimator}")
  return ppm[idx] + (ppm[1]-ppm[0])*d, peak_val
