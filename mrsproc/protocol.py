# mrsproc/protocol.py - MRSProc - acquisition protocols
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Acquisition protocols: edit sub-spectrum classification and combination.

An AcquisitionProtocol knows how many sub-spectra a sequence delivers, which
role each sub-spectrum plays, how to align them against each other on a
signal unaffected by editing, and how to combine them into the derived
conditions (difference and sum spectra). Classification only depends on the
spectra, not on their input order.
"""

from abc import ABC, abstractmethod
from dataclasses import replace

import lmfit
import numpy as np

from mrsproc.align import LANDMARKS_EDITED, LANDMARKS_UNEDITED
from mrsproc.cfg import Cfg
from mrsproc.conditions import SUBSPECTRA, ConditionKind
from mrsproc.errors import PreconditionError, UnsupportedTargetError
from mrsproc.spectrum import Spectrum

NAA_CLASSIFY_WINDOW = (1.7, 2.3)
WATER_CLASSIFY_WINDOW = (4.4, 5.0)

QUALITY_WINDOWS = {
  'naa': (1.8, 2.2),
  'cr': (2.8, 3.2),
  'water': (4.2, 5.2),
  'mm': (0.7, 1.1)
}


def _window_max(spectrum, window):
  spec, _ = spectrum.freq_range(*window)
  if len(spec) == 0:
    raise PreconditionError(f"Classification window {window} outside spectrum")
  return np.abs(spec)


def align_to(spectrum, target, window, max_shift_hz=5.0):
  """Align spectrum to target by frequency and phase over the real part in window.

  Returns
  -------
      tuple: (aligned Spectrum, frequency shift Hz, phase degrees)
  """
  _, t = spectrum.get_t()
  tspec, ppm = target.get_f()
  idx = (ppm >= window[0]) & (ppm <= window[1])
  tre = np.real(tspec[idx])

  def shifted(v):
    return spectrum.replace(fid=spectrum.fid * np.exp(1j*(2.0*np.pi*v['f']*t + v['ph'])))

  def residual(p):
    s, _ = shifted(p.valuesdict()).get_f()
    return np.real(s[idx]) - tre

  para = lmfit.Parameters()
  para.add('f', value=0.0, min=-max_shift_hz, max=max_shift_hz)
  para.add('ph', value=0.0, min=-np.pi, max=np.pi)
  res = lmfit.minimize(residual, para, method='least_squares',
                       max_nfev=Cfg.val['reference_max_nfev'])
  v = res.params.valuesdict()
  if not (np.isfinite(v['f']) and np.isfinite(v['ph'])):
    return spectrum, 0.0, 0.0
  return shifted(v).flagged('subspec_aligned'), v['f'], np.degrees(v['ph'])


class AcquisitionProtocol(ABC):
  """Sequence specific handling of sub-spectra.

  Attributes
  ----------
      name (str): Sequence name
      subspecs (int): Number of sub-spectra delivered by the sequence
      target (str): Editing target
  """
  name = None
  subspecs = 1
  target = 'none'

  @property
  def edited(self):
    return self.subspecs > 1

  def landmarks(self):
    """Singlets used for the initial frequency guess of the alignment."""
    return LANDMARKS_EDITED if self.edited else LANDMARKS_UNEDITED

  def polarity_window(self):
    if self.edited:
      return tuple(Cfg.val['polarity_window_edited'])
    return tuple(Cfg.val['polarity_window_unedited'])

  @abstractmethod
  def classify(self, spectra):
    """Order sub-spectra by role.

    Parameters
    ----------
        spectra (list): Sub-spectra in acquisition order

    Returns
    -------
        tuple: (spectra in role order A, B, ..., switch_order flag, permutation)
    """

  @abstractmethod
  def combine(self, ordered):
    """Derived conditions from role-ordered sub-spectra.

    Returns
    -------
        dict: ConditionKind -> Spectrum, including the sub-spectra themselves
    """

  def align_subspectra(self, ordered):
    """Align sub-spectra B, C, ... to A on a signal unaffected by editing."""
    return list(ordered)

  def reference_condition(self):
    """Condition on which the shared frequency reference is measured."""
    return ConditionKind.SUM if self.edited else ConditionKind.A

  def quality_window(self, kind):
    """(low, high) ppm window for SNR and linewidth of a condition."""
    kind = ConditionKind.parse(kind)
    if kind.is_water:
      return QUALITY_WINDOWS['water']
    if kind == ConditionKind.MM:
      return QUALITY_WINDOWS['mm']
    if kind == ConditionKind.A:
      return QUALITY_WINDOWS['naa']
    return QUALITY_WINDOWS['cr']

  def fit_conditions(self, style):
    """Conditions to fit: list of tuples; each tuple is fitted jointly."""
    return [(ConditionKind.A,)]

  def _check(self, spectra):
    if len(spectra) != self.subspecs:
      raise PreconditionError(f"{self.name} needs {self.subspecs} sub-spectra, got {len(spectra)}")

  @staticmethod
  def _mark(spectra, switched):
    out = []
    for role, s in zip(SUBSPECTRA, spectra):
      out.append(s.replace(condition=role,
                           provenance=replace(s.provenance, order_switched=switched)))
    return out


class UnEdited(AcquisitionProtocol):
  name = 'unedited'
  subspecs = 1

  def classify(self, spectra):
    self._check(spectra)
    return self._mark(spectra, False), False, (0,)

  def combine(self, ordered):
    self._check(ordered)
    return {ConditionKind.A: ordered[0]}


class MEGA(AcquisitionProtocol):
  """Two-step MEGA editing; A is edit-OFF, B is edit-ON.

  GABA editing (1.9 ppm pulse) partially suppresses NAA in the ON
  sub-spectrum; GSH editing (4.56 ppm pulse) partially suppresses the
  residual water.
  """
  name = 'mega'
  subspecs = 2
  TARGETS = {
    # target: (classification window, reporter window for sub-spectrum alignment)
    'GABA': (NAA_CLASSIFY_WINDOW, (3.1, 3.3)),
    'GSH': (WATER_CLASSIFY_WINDOW, (1.85, 2.15))
  }

  def __init__(self, target='GABA'):
    if target not in MEGA.TARGETS:
      raise UnsupportedTargetError(f"MEGA editing target {target} not supported, "
                                   f"use one of {list(MEGA.TARGETS)}")
    self.target = target

  def classify(self, spectra):
    self._check(spectra)
    window = MEGA.TARGETS[self.target][0]
    a = _window_max(spectra[0], window)
    b = _window_max(spectra[1], window)
    if np.max(a - b) > np.max(b - a):
      return self._mark(spectra, False), False, (0, 1)
    return self._mark([spectra[1], spectra[0]], True), True, (1, 0)

  def align_subspectra(self, ordered):
    self._check(ordered)
    on, _, _ = align_to(ordered[1], ordered[0], MEGA.TARGETS[self.target][1])
    return [ordered[0], on]

  def combine(self, ordered):
    self._check(ordered)
    off, on = ordered
    return {
      ConditionKind.A: off,
      ConditionKind.B: on,
      ConditionKind.DIFF1: Spectrum.combs([1.0, -1.0], [on, off], condition=ConditionKind.DIFF1),
      ConditionKind.SUM: Spectrum.combs([1.0, 1.0], [on, off], condition=ConditionKind.SUM)
    }

  def fit_conditions(self, style):
    if style == 'concatenated':
      return [(ConditionKind.DIFF1, ConditionKind.SUM)]
    return [(ConditionKind.A,), (ConditionKind.DIFF1,)]


class HERMES(AcquisitionProtocol):
  """Four-step Hadamard editing of GABA and GSH.

  Role order: A (both OFF), B (GABA-ON), C (GSH-ON), D (both ON).
  DIFF1 is the GABA and DIFF2 the GSH difference spectrum.
  """
  name = 'hermes'
  subspecs = 4
  target = 'GABA+GSH'
  REPORTER_WINDOW = (3.1, 3.3)

  def classify(self, spectra):
    self._check(spectra)
    naa = np.array([np.max(_window_max(s, NAA_CLASSIFY_WINDOW)) for s in spectra])
    water = np.array([np.max(_window_max(s, WATER_CLASSIFY_WINDOW)) for s in spectra])
    order = np.argsort(naa)
    gaba_on = sorted(order[:2], key=lambda k: -water[k])
    gaba_off = sorted(order[2:], key=lambda k: -water[k])
    perm = (int(gaba_off[0]), int(gaba_on[0]), int(gaba_off[1]), int(gaba_on[1]))
    switched = perm != (0, 1, 2, 3)
    return self._mark([spectra[k] for k in perm], switched), switched, perm

  def align_subspectra(self, ordered):
    self._check(ordered)
    return [ordered[0]] + [align_to(s, ordered[0], self.REPORTER_WINDOW)[0] for s in ordered[1:]]

  def combine(self, ordered):
    self._check(ordered)
    a, b, c, d = ordered
    return {
      ConditionKind.A: a,
      ConditionKind.B: b,
      ConditionKind.C: c,
      ConditionKind.D: d,
      ConditionKind.DIFF1: Spectrum.combs([1.0, 1.0, -1.0, -1.0], [b, d, a, c],
                                          condition=ConditionKind.DIFF1),
      ConditionKind.DIFF2: Spectrum.combs([1.0, 1.0, -1.0, -1.0], [c, d, a, b],
                                          condition=ConditionKind.DIFF2),
      ConditionKind.SUM: Spectrum.combs([1.0, 1.0, 1.0, 1.0], [a, b, c, d],
                                        condition=ConditionKind.SUM)
    }

  def fit_conditions(self, style):
    if style == 'concatenated':
      return [(ConditionKind.DIFF1, ConditionKind.DIFF2, ConditionKind.SUM)]
    return [(ConditionKind.A,), (ConditionKind.DIFF1,), (ConditionKind.DIFF2,)]


class HERCULES(HERMES):
  """HERCULES multiplexed editing; processed and fitted like HERMES."""
  name = 'hercules'


def make_protocol(sequence, target='none'):
  """Protocol for a sequence name and editing target.

  Raises
  ------
      UnsupportedTargetError: For unknown sequences or editing targets
  """
  if sequence == 'unedited':
    return UnEdited()
  if sequence == 'mega':
    return MEGA(target)
  if sequence == 'hermes':
    return HERMES()
  if sequence == 'hercules':
    return HERCULES()
  raise UnsupportedTargetError(f"Unknown sequence {sequence}")


def protocol_for(options):
  return make_protocol(options.sequence, options.edit_target)
