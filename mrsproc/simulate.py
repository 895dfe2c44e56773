# mrsproc/simulate.py - MRSProc - synthetic signals and basis sets
#
# SPDX-FileCopyrightText: Copyright (C) 2019 Max Chandler, PhD student at Cardiff University
# SPDX-FileCopyrightText: Copyright (C) 2020-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Synthetic MRS data from singlet approximations of the metabolites.

Resonances are the (ppm, protons) singlets of molecules.PEAKS; J-coupling is
ignored. Editing is modelled by scaling individual resonances in the
edit-ON sub-spectra (e.g. the GABA 3.01 ppm signal doubled, NAA partially
saturated by the 1.9 ppm editing pulse). This is sufficient to exercise
classification, combination, alignment and fitting with known ground truth.
"""

import numpy as np

from mrsproc import molecules
from mrsproc.basis import BasisSet
from mrsproc.cfg import Cfg
from mrsproc.conditions import ConditionKind
from mrsproc.errors import UnsupportedTargetError
from mrsproc.pipeline import Dataset
from mrsproc.signal import TimeDomainSignal

# Default concentrations (mM, relative)
CONCENTRATIONS = {
  'NAA': 12.0,
  'Cr': 8.0,
  'Cho': 2.0,
  'Glu': 10.0,
  'Gln': 3.0,
  'Ins': 6.0,
  'GABA': 1.5,
  'GSH': 2.0
}

# Editing effects in edit-ON sub-spectra: molecule -> {ppm: factor}, and the
# factor applied to residual water
EDITS = {
  'GABA': ({'GABA': {3.01: 2.0, 1.89: 0.0}, 'NAA': {2.008: 0.5}}, 1.0),
  'GSH': ({'GSH': {2.95: 2.0, 4.56: 0.0}}, 0.3)
}

# Edits active per sub-spectrum role
ROLES = {
  'unedited': {ConditionKind.A: ()},
  'mega': {ConditionKind.A: (), ConditionKind.B: ('target',)},
  'hermes': {ConditionKind.A: (), ConditionKind.B: ('GABA',), ConditionKind.C: ('GSH',),
             ConditionKind.D: ('GABA', 'GSH')}
}
ROLES['hercules'] = ROLES['hermes']

# Derived conditions as linear combinations of sub-spectra
COMBINATIONS = {
  'unedited': {},
  'mega': {
    ConditionKind.DIFF1: {ConditionKind.B: 1.0, ConditionKind.A: -1.0},
    ConditionKind.SUM: {ConditionKind.A: 1.0, ConditionKind.B: 1.0}
  },
  'hermes': {
    ConditionKind.DIFF1: {ConditionKind.B: 1.0, ConditionKind.D: 1.0, ConditionKind.A: -1.0,
                          ConditionKind.C: -1.0},
    ConditionKind.DIFF2: {ConditionKind.C: 1.0, ConditionKind.D: 1.0, ConditionKind.A: -1.0,
                          ConditionKind.B: -1.0},
    ConditionKind.SUM: {ConditionKind.A: 1.0, ConditionKind.B: 1.0, ConditionKind.C: 1.0,
                        ConditionKind.D: 1.0}
  }
}
COMBINATIONS['hercules'] = COMBINATIONS['hermes']


def _edits(sequence, target, role):
  if sequence not in ROLES:
    raise UnsupportedTargetError(f"Unknown sequence {sequence}")
  active = ROLES[sequence][role]
  targets = [target if a == 'target' else a for a in active]
  for t in targets:
    if t not in EDITS:
      raise UnsupportedTargetError(f"No editing model for target {t}")
  return targets


def peaks(name, edits=()):
  """(ppm, amplitude) singlets of a molecule with the given edits applied."""
  if name not in molecules.PEAKS:
    raise RuntimeError(f"No resonances known for {name}")
  out = []
  for ppm, protons in molecules.PEAKS[name]:
    f = 1.0
    for e in edits:
      f *= EDITS[e][0].get(name, {}).get(ppm, 1.0)
    out.append((ppm, protons * f))
  return out


def water_factor(edits=()):
  f = 1.0
  for e in edits:
    f *= EDITS[e][1]
  return f


def singlet_fid(singlets, npts, dwelltime, txfrq, centre_ppm=None, lorentz_hz=1.0, gauss_hz=0.0):
  """FID of Lorentzian/Gaussian damped singlets given as (ppm, amplitude) pairs."""
  if centre_ppm is None:
    centre_ppm = Cfg.val['centre_ppm']
  t = np.arange(npts) * dwelltime
  fid = np.zeros(npts, dtype=complex)
  for ppm, amp in singlets:
    fid += amp * np.exp(2j*np.pi*(ppm - centre_ppm)*txfrq*t)
  return fid * np.exp(-np.pi*lorentz_hz*t) * np.exp(-(np.pi*gauss_hz*t)**2 / (4.0*np.log(2.0)))


def synthetic_basis(names=None, npts=2048, dwelltime=1/2000, txfrq=123.2, centre_ppm=None,
                    lorentz_hz=1.0, edits=(), condition=None, te=None):
  """Basis set of singlet approximations.

  Parameters
  ----------
      names (list, optional): Molecules. Defaults to the keys of CONCENTRATIONS
      npts (int, optional): Number of samples
      dwelltime (float, optional): Sampling interval in seconds
      txfrq (float, optional): Transmitter frequency in MHz
      centre_ppm (float, optional): Receiver centre. Defaults to Cfg centre_ppm
      lorentz_hz (float, optional): Linewidth of the basis functions
      edits (tuple, optional): Editing targets active in this condition
      condition (ConditionKind, optional): Condition the basis describes

  Returns
  -------
      BasisSet: Unnormalised basis set
  """
  if names is None:
    names = list(CONCENTRATIONS.keys())
  fids = np.column_stack([singlet_fid(peaks(n, edits), npts, dwelltime, txfrq, centre_ppm,
                                      lorentz_hz) for n in names])
  return BasisSet(names, fids, dwelltime, txfrq, centre_ppm=centre_ppm, te=te,
                  condition=condition)


def edited_bases(sequence='unedited', target='GABA', **kwargs):
  """Basis sets for every sub-spectrum role and derived condition of a sequence.

  Returns
  -------
      dict: ConditionKind -> BasisSet
  """
  bases = {}
  for role in ROLES[sequence]:
    bases[role] = synthetic_basis(edits=_edits(sequence, target, role), condition=role, **kwargs)
  for cond, weights in COMBINATIONS[sequence].items():
    first = bases[ConditionKind.A]
    fids = sum(w * bases[r].fids for r, w in weights.items())
    bases[cond] = BasisSet(first.names, fids, first.dwelltime, first.txfrq,
                           centre_ppm=first.centre_ppm, te=first.te, condition=cond)
  return bases


def synthetic_signal(concentrations=None, sequence='unedited', target='GABA', averages=8,
                     coils=1, npts=2048, dwelltime=1/2000, txfrq=123.2, centre_ppm=None,
                     lorentz_hz=4.0, offset_hz=0.0, drift_hz=0.0, freq_jitter_hz=0.0,
                     phase_jitter_deg=0.0, noise=0.0, water=0.0, ecc_rad=0.0, polarity=1.0,
                     order=None, seed=None, id=None, te=68.0, tr=2000.0):
  """Multi-transient synthetic signal with known ground truth.

  Parameters
  ----------
      concentrations (dict, optional): Molecule -> amplitude. Defaults to CONCENTRATIONS
      sequence (str, optional): 'unedited', 'mega', 'hermes' or 'hercules'
      target (str, optional): MEGA editing target ('GABA' or 'GSH')
      averages (int, optional): Transients per sub-spectrum
      coils (int, optional): Receive coils (amplitudes 1 down to 0.5, random phases)
      lorentz_hz (float, optional): Lorentzian linewidth
      offset_hz (float, optional): Frequency offset of all transients
      drift_hz (float, optional): Linear frequency drift from first to last transient
      freq_jitter_hz (float, optional): Standard deviation of random frequency jumps
      phase_jitter_deg (float, optional): Standard deviation of random phase jumps
      noise (float, optional): Standard deviation of complex Gaussian noise per transient and coil
      water (float, optional): Amplitude of residual water at 4.68 ppm
      ecc_rad (float, optional): Eddy-current phase amplitude, decaying with 50 ms
      polarity (float, optional): Global sign (-1 for inverted data)
      order (list, optional): Role of each sub-spectrum in acquisition order
      seed (int, optional): Random seed

  Returns
  -------
      TimeDomainSignal: Data with axes (time, average, coil, subspec)
  """
  if concentrations is None:
    concentrations = CONCENTRATIONS
  if centre_ppm is None:
    centre_ppm = Cfg.val['centre_ppm']
  rng = np.random.default_rng(seed)
  roles = list(ROLES[sequence].keys())
  if order is None:
    order = roles
  t = np.arange(npts) * dwelltime
  ecc = np.exp(1j * ecc_rad * np.exp(-t / 0.05))
  coil_amp = np.linspace(1.0, 0.5, coils)
  coil_ph = rng.uniform(-np.pi, np.pi, coils) if coils > 1 else np.zeros(1)
  data = np.zeros((npts, averages, coils, len(order)), dtype=complex)
  for s, role in enumerate(order):
    edits = _edits(sequence, target, role)
    singlets = [(p, c*a) for n, c in concentrations.items() for p, a in peaks(n, edits)]
    if water != 0.0:
      singlets.append((molecules.WATER_PPM, water * water_factor(edits)))
    clean = polarity * ecc * singlet_fid(singlets, npts, dwelltime, txfrq, centre_ppm, lorentz_hz)
    for k in range(averages):
      f = offset_hz + (drift_hz * k / (averages - 1) if averages > 1 else 0.0)
      f += freq_jitter_hz * rng.standard_normal()
      ph = np.radians(phase_jitter_deg * rng.standard_normal())
      fid = clean * np.exp(1j*(2.0*np.pi*f*t + ph))
      for c in range(coils):
        data[:,k,c,s] = coil_amp[c] * np.exp(1j*coil_ph[c]) * fid
        if noise > 0.0:
          data[:,k,c,s] += noise * (rng.standard_normal(npts) + 1j*rng.standard_normal(npts))
  return TimeDomainSignal(data, dwelltime, txfrq, centre_ppm=centre_ppm, te=te, tr=tr,
                          id=id)


def synthetic_reference(amplitude=100.0, averages=1, npts=2048, dwelltime=1/2000, txfrq=123.2,
                        centre_ppm=None, lorentz_hz=4.0, offset_hz=0.0, ecc_rad=0.0, noise=0.0,
                        seed=None, id=None):
  """Unsuppressed water reference with the same eddy-current phase as synthetic_signal."""
  return synthetic_signal({}, averages=averages, npts=npts, dwelltime=dwelltime, txfrq=txfrq,
                          centre_ppm=centre_ppm, lorentz_hz=lorentz_hz, offset_hz=offset_hz,
                          noise=noise, water=amplitude, ecc_rad=ecc_rad, seed=seed, id=id)


def synthetic_dataset(sequence='unedited', target='GABA', with_ref=True, seed=None, id=None,
                      **kwargs):
  """Dataset of a synthetic metabolite signal and, optionally, its water reference."""
  metab = synthetic_signal(sequence=sequence, target=target, seed=seed, id=id, **kwargs)
  ref = None
  if with_ref:
    ref = synthetic_reference(npts=metab.npts, dwelltime=metab.dwelltime, txfrq=metab.txfrq,
                              centre_ppm=metab.centre_ppm, offset_hz=kwargs.get('offset_hz', 0.0),
                              ecc_rad=kwargs.get('ecc_rad', 0.0),
                              seed=None if seed is None else seed + 1, id=id)
  return Dataset(metab=metab, ref=ref, id=id)
