# mrsproc/signal.py - MRSProc - multi-transient time-domain signal
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Raw multi-transient MRS data as delivered by a loader.

The samples live in a 4-D complex array with the fixed axis order
(time, average, coil, subspec). Loaders that already averaged the
transients set `averaged`; such data is passed through averaging
unchanged.
"""

import numpy as np

from mrsproc import molecules
from mrsproc.cfg import Cfg
from mrsproc.errors import PreconditionError
from mrsproc.spectrum import Provenance, Spectrum

AXES = ('time', 'average', 'coil', 'subspec')


class TimeDomainSignal:
  """Multi-transient, multi-coil time-domain MRS signal.

  Attributes
  ----------
      data (numpy.ndarray): Complex samples, shape (time, average, coil, subspec)
      dwelltime (float): Sampling interval in seconds
      txfrq (float): Transmitter frequency in MHz
      b0 (float): Field strength in Tesla
      te (float): Echo time in ms
      tr (float): Repetition time in ms
      centre_ppm (float): Chemical shift of the receiver centre
      geometry (dict): Voxel geometry, passed through untouched
      averaged (bool): Transients were combined before loading
      id (str): Dataset identifier
  """

  def __init__(self, data, dwelltime, txfrq, b0=None, te=None, tr=None, centre_ppm=None,
               geometry=None, averaged=False, id=None):
    data = np.asarray(data, dtype=complex)
    if data.ndim != 4:
      raise PreconditionError(f"Signal data must have axes {AXES}, got shape {data.shape}")
    if data.shape[0] == 0:
      raise PreconditionError("Signal without time samples")
    if data.shape[1] == 0:
      raise PreconditionError("Signal with zero averages")
    if data.shape[2] == 0 or data.shape[3] == 0:
      raise PreconditionError("Signal without coils or sub-spectra")
    if dwelltime <= 0:
      raise PreconditionError(f"Dwell time must be positive, got {dwelltime}")
    self.data = data
    self.dwelltime = float(dwelltime)
    self.txfrq = float(txfrq)
    self.b0 = self.txfrq / molecules.GYROMAGNETIC_RATIO if b0 is None else float(b0)
    self.te = te
    self.tr = tr
    self.centre_ppm = Cfg.val['centre_ppm'] if centre_ppm is None else float(centre_ppm)
    self.geometry = {} if geometry is None else geometry
    self.averaged = bool(averaged)
    self.id = id

  @property
  def npts(self):
    return self.data.shape[0]

  @property
  def averages(self):
    return self.data.shape[1]

  @property
  def coils(self):
    return self.data.shape[2]

  @property
  def subspecs(self):
    return self.data.shape[3]

  @property
  def spectral_width(self):
    return 1.0 / self.dwelltime

  def _with(self, data, **kwargs):
    args = {
      'dwelltime': self.dwelltime, 'txfrq': self.txfrq, 'b0': self.b0, 'te': self.te,
      'tr': self.tr, 'centre_ppm': self.centre_ppm, 'geometry': self.geometry,
      'averaged': self.averaged, 'id': self.id
    }
    args.update(kwargs)
    return TimeDomainSignal(data, **args)

  def take_subspec(self, index):
    """Signal restricted to one sub-spectrum (subspec axis kept with length 1)."""
    if index < 0 or index >= self.subspecs:
      raise PreconditionError(f"Sub-spectrum {index} out of range [0,{self.subspecs})")
    return self._with(self.data[:,:,:,index:index+1])

  def with_data(self, data):
    """Same metadata, new samples (axis order must be kept)."""
    return self._with(data)

  def combine_coils(self, phase_point=0):
    """Combine receive coils.

    Each coil is phased with the phase of its averaged signal at phase_point
    and weighted by the (normalised) amplitude there.

    Returns
    -------
        tuple: (TimeDomainSignal with one coil, phases (rad), weights)
    """
    if self.coils == 1:
      return self, np.zeros(1), np.ones(1)
    ref = np.mean(self.data, axis=(1,3))[phase_point,:]
    phases = np.angle(ref)
    weights = np.abs(ref)
    norm = np.sqrt(np.sum(weights**2))
    if norm <= 0.0:
      raise PreconditionError("Coil combination: no signal at the phasing point")
    weights = weights / norm
    data = np.sum(self.data * (weights * np.exp(-1j*phases))[np.newaxis,np.newaxis,:,np.newaxis],
                  axis=2, keepdims=True)
    return self._with(data), phases, weights

  def fids(self, subspec=0):
    """FIDs of one sub-spectrum as (time, average) array; requires combined coils."""
    if self.coils != 1:
      raise PreconditionError("Combine coils before accessing FIDs")
    return self.data[:,:,0,subspec]

  def average(self, weights=None, subspec=0):
    """Weighted average of the transients of one sub-spectrum.

    Parameters
    ----------
        weights (array-like, optional): Per-average weights. Defaults to equal weights
        subspec (int, optional): Sub-spectrum index. Defaults to 0

    Returns
    -------
        Spectrum: The averaged signal
    """
    fids = self.fids(subspec)
    if weights is None:
      weights = np.ones(self.averages)
    weights = np.asarray(weights, dtype=float)
    if weights.shape != (self.averages,):
      raise PreconditionError(f"Need {self.averages} averaging weights, got {weights.shape}")
    if np.sum(weights) <= 0.0:
      raise PreconditionError("Averaging weights sum to zero")
    # A single transient is passed through unchanged
    fid = fids[:,0].copy() if self.averages == 1 else fids @ weights / np.sum(weights)
    return self.to_spectrum(fid, provenance=Provenance(weights=weights/np.max(weights)))

  def to_spectrum(self, fid=None, condition=None, provenance=None):
    """Spectrum with this signal's metadata (fid defaults to the single transient)."""
    if fid is None:
      if self.averages != 1 or self.coils != 1 or self.subspecs != 1:
        raise PreconditionError("Only single-transient signals convert directly to a spectrum")
      fid = self.data[:,0,0,0]
    return Spectrum(fid, self.dwelltime, self.txfrq, centre_ppm=self.centre_ppm, b0=self.b0,
                    te=self.te, tr=self.tr, id=self.id, condition=condition,
                    provenance=provenance)
