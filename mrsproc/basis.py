# mrsproc/basis.py - MRSProc - basis set
#
# SPDX-FileCopyrightText: Copyright (C) 2019 Max Chandler, PhD student at Cardiff University
# SPDX-FileCopyrightText: Copyright (C) 2020-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Basis set for linear-combination fitting.

A BasisSet is an ordered collection of uniquely named basis FIDs sharing
dwell time, number of samples, transmitter frequency and receiver centre.
It is normalised once (by the maximum real spectrum value) and then
resampled onto the frequency grid of each spectrum it is fitted to.
"""

import json

import numpy as np

from mrsproc.cfg import Cfg
from mrsproc.conditions import ConditionKind
from mrsproc.errors import DataInconsistencyError, PreconditionError
from mrsproc.spectrum import npfft

# Macromolecule and lipid components: name -> [(ppm, FWHM ppm, protons), ...]
# Amplitudes and widths as for LCModel and TARQUIN (Wilson et al., MRM 2011).
MM_LIPIDS = {
  'MM09': [(0.91, 0.14, 3.0)],
  'MM12': [(1.21, 0.15, 2.0)],
  'MM14': [(1.43, 0.17, 2.0)],
  'MM17': [(1.67, 0.15, 2.0)],
  'MM20': [(2.08, 0.15, 1.33), (2.25, 0.2, 0.33), (1.95, 0.15, 0.33), (3.0, 0.2, 0.4)],
  'Lip09': [(0.89, 0.14, 3.0)],
  'Lip13': [(1.28, 0.15, 2.0), (1.28, 0.89, 2.0)],
  'Lip20': [(2.04, 0.15, 1.33), (2.25, 0.15, 0.67), (2.8, 0.2, 0.87)]
}
CR_AREA_WINDOW = (2.9, 3.15)


def gaussian_fid(npts, dwelltime, txfrq, centre_ppm, ppm, fwhm_hz, amplitude=1.0):
  """Gaussian singlet at ppm with FWHM fwhm_hz."""
  t = np.arange(npts) * dwelltime
  f = (ppm - centre_ppm) * txfrq
  return amplitude * np.exp(2j*np.pi*f*t) * np.exp(-(np.pi*fwhm_hz*t)**2 / (4.0*np.log(2.0)))


class BasisSet:
  """Named basis FIDs on a common time grid.

  Attributes
  ----------
      names (list): Basis function names (unique)
      fids (numpy.ndarray): Complex FIDs, shape (time, basis function)
      dwelltime (float): Sampling interval in seconds
      txfrq (float): Transmitter frequency in MHz
      centre_ppm (float): Chemical shift of the receiver centre
      condition (ConditionKind, optional): Condition the basis describes (edited sets)
      normalised (bool): Set once normalise() was applied
      scale (float): Normalisation factor applied
  """

  def __init__(self, names, fids, dwelltime, txfrq, centre_ppm=None, te=None,
               condition=None, normalised=False, scale=1.0):
    names = list(names)
    fids = np.asarray(fids, dtype=complex)
    if fids.ndim == 1:
      fids = fids[:,np.newaxis]
    if fids.ndim != 2 or fids.shape[1] != len(names):
      raise PreconditionError(f"Basis needs one FID per name, got {fids.shape} for {len(names)} names")
    seen = set()
    for n in names:
      if n in seen:
        raise PreconditionError(f"Duplicate basis function name {n}")
      seen.add(n)
    self.names = names
    self.fids = fids
    self.dwelltime = float(dwelltime)
    self.txfrq = float(txfrq)
    self.centre_ppm = Cfg.val['centre_ppm'] if centre_ppm is None else float(centre_ppm)
    self.te = te
    self.condition = condition
    self.normalised = normalised
    self.scale = scale

  def __len__(self):
    return len(self.names)

  def __contains__(self, name):
    return name in self.names

  @property
  def npts(self):
    return self.fids.shape[0]

  def _with(self, names, fids, **kwargs):
    args = {
      'dwelltime': self.dwelltime, 'txfrq': self.txfrq, 'centre_ppm': self.centre_ppm,
      'te': self.te, 'condition': self.condition, 'normalised': self.normalised,
      'scale': self.scale
    }
    args.update(kwargs)
    return BasisSet(names, fids, **args)

  def index(self, name):
    if name not in self.names:
      raise PreconditionError(f"Basis function {name} not in basis set")
    return self.names.index(name)

  def fid(self, name):
    return self.fids[:,self.index(name)]

  def ppm_axis(self, npts=None, dwelltime=None):
    npts = self.npts if npts is None else npts
    dwelltime = self.dwelltime if dwelltime is None else dwelltime
    return self.centre_ppm + npfft.fftshift(npfft.fftfreq(npts, dwelltime)) / self.txfrq

  def spectra(self):
    """Basis spectra (time x basis) and ppm axis."""
    return npfft.fftshift(npfft.fft(self.fids, axis=0), axes=0), self.ppm_axis()

  def subset(self, names):
    """Basis set with only the given names, in the given order."""
    idx = [self.index(n) for n in names]
    return self._with(list(names), self.fids[:,idx])

  def nonzero(self):
    """Basis set without functions that vanish, e.g. cancelled in difference spectra."""
    peak = np.max(np.abs(self.fids), axis=0)
    keep = [n for n, p in zip(self.names, peak) if p > Cfg.val['num_eps'] * np.max(peak)]
    if len(keep) == 0:
      raise PreconditionError("Basis set without non-zero functions")
    return self.subset(keep)

  def add(self, name, fid):
    fid = np.asarray(fid, dtype=complex)
    if len(fid) != self.npts:
      raise DataInconsistencyError(f"Basis function {name} has {len(fid)} samples, basis {self.npts}")
    return self._with([*self.names, name], np.column_stack((self.fids, fid)))

  def scaled(self, factor):
    """FIDs multiplied by factor, marked as normalised."""
    return self._with(self.names, self.fids * factor, normalised=True, scale=self.scale / factor)

  def normalise(self):
    """Scale all FIDs by the maximum real spectrum value; applied only once."""
    if self.normalised:
      return self
    spec, _ = self.spectra()
    scale = float(np.max(np.real(spec)))
    if scale <= 0.0:
      raise PreconditionError("Basis set without positive spectral values")
    return self._with(self.names, self.fids / scale, normalised=True, scale=self.scale*scale)

  def add_macromolecules(self):
    """Add Gaussian macromolecule and lipid basis functions.

    Amplitudes are relative to the area of one proton of the Cr CH3 singlet,
    so a Cr basis function is required. Functions already present are kept.
    """
    if 'Cr' not in self.names:
      raise PreconditionError("Macromolecule basis functions need a Cr basis function")
    spec, ppm = self.spectra()
    idx = (ppm >= CR_AREA_WINDOW[0]) & (ppm <= CR_AREA_WINDOW[1])
    one_proton = np.sum(np.real(spec[idx,self.index('Cr')])) / 3.0
    hzppm = self.txfrq
    test = gaussian_fid(self.npts, self.dwelltime, self.txfrq, self.centre_ppm,
                        self.centre_ppm, 0.1*hzppm)
    gauss_area = np.sum(np.real(npfft.fft(test)))
    basis = self
    for name, peaks in MM_LIPIDS.items():
      if name in basis.names:
        continue
      fid = np.zeros(self.npts, dtype=complex)
      for ppm_p, width, protons in peaks:
        fid += gaussian_fid(self.npts, self.dwelltime, self.txfrq, self.centre_ppm, ppm_p,
                            width*hzppm, protons*one_proton/gauss_area)
      basis = basis.add(name, fid)
    return basis

  def resample(self, spectrum, fit_range=None):
    """Basis set on the time and frequency grid of spectrum.

    With matching dwell time, transmitter frequency and receiver centre the
    FIDs are truncated or zero-filled; otherwise the spectra are
    interpolated onto the ppm axis of spectrum.

    Raises
    ------
        DataInconsistencyError: If the grids cannot be matched or the basis does not cover fit_range
    """
    if abs(self.txfrq - spectrum.txfrq) > 0.01 * spectrum.txfrq:
      raise DataInconsistencyError(f"Basis set at {self.txfrq} MHz, data at {spectrum.txfrq} MHz")
    n = spectrum.npts
    eps = Cfg.val['num_eps']
    if abs(self.dwelltime - spectrum.dwelltime) < eps * spectrum.dwelltime and \
       abs(self.txfrq - spectrum.txfrq) < eps * spectrum.txfrq and \
       abs(self.centre_ppm - spectrum.centre_ppm) < eps:
      if self.npts >= n:
        fids = self.fids[:n,:]
      else:
        fids = np.vstack((self.fids, np.zeros((n - self.npts, len(self)), dtype=complex)))
    else:
      spec, ppm_b = self.spectra()
      ppm_d = spectrum.ppm_axis()
      if fit_range is not None and (ppm_b[0] > fit_range[0] or ppm_b[-1] < fit_range[1]):
        raise DataInconsistencyError(f"Basis set covers [{ppm_b[0]:.2f},{ppm_b[-1]:.2f}] ppm, "
                                     f"fit range is {fit_range}")
      # Keep FID amplitudes: spectrum heights scale with 1/dwelltime
      factor = self.dwelltime / spectrum.dwelltime
      spec_d = np.zeros((n, len(self)), dtype=complex)
      for k in range(len(self)):
        spec_d[:,k] = factor * (np.interp(ppm_d, ppm_b, np.real(spec[:,k]), left=0.0, right=0.0) +
                                1j*np.interp(ppm_d, ppm_b, np.imag(spec[:,k]), left=0.0, right=0.0))
      fids = npfft.ifft(npfft.ifftshift(spec_d, axes=0), axis=0)
    if fids.shape != (n, len(self)):
      raise DataInconsistencyError(f"Resampled basis has shape {fids.shape}, expected {(n, len(self))}")
    return self._with(self.names, fids, dwelltime=spectrum.dwelltime, txfrq=spectrum.txfrq,
                      centre_ppm=spectrum.centre_ppm)

  def to_json(self, filename=None):
    data = {
      'names': self.names,
      'dwelltime': self.dwelltime,
      'txfrq': self.txfrq,
      'centre_ppm': self.centre_ppm,
      'te': self.te,
      'condition': None if self.condition is None else self.condition.value,
      'normalised': self.normalised,
      'scale': self.scale,
      'fids': [[(float(np.real(v)),float(np.imag(v))) for v in self.fids[:,k]]
               for k in range(len(self))],
      'mrsproc_json_format': 1
    }
    if filename is not None:
      with open(filename, 'w', encoding='utf-8') as f:
        json.dump(data, f, ensure_ascii=False)
    return data

  @staticmethod
  def from_json(data):
    if isinstance(data, str):
      with open(data, encoding='utf-8') as f:
        data = json.load(f)
    if data.get('mrsproc_json_format', None) != 1:
      raise RuntimeError("Unknown basis json format")
    fids = np.array([[complex(re, im) for re, im in col] for col in data['fids']]).T
    return BasisSet(data['names'], fids, data['dwelltime'], data['txfrq'],
                    centre_ppm=data['centre_ppm'], te=data['te'],
                    condition=None if data['condition'] is None else ConditionKind.parse(data['condition']),
                    normalised=data['normalised'], scale=data['scale'])
