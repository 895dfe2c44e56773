# tests/test_signal.py - MRSProc - multi-transient signals
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

import numpy as np
import pytest

from mrsproc.errors import PreconditionError
from mrsproc.signal import TimeDomainSignal
from mrsproc.simulate import singlet_fid

DWELL = 1.0 / 2000.0


def _signal(averages=2, coils=1, subspecs=1, npts=512):
  fid = singlet_fid([(3.0, 1.0)], npts, DWELL, 123.2, 4.68, 4.0)
  data = np.tile(fid[:,np.newaxis,np.newaxis,np.newaxis], (1, averages, coils, subspecs))
  return TimeDomainSignal(data, DWELL, 123.2, te=30.0, tr=2000.0, id='sig')


def test_zero_averages_are_rejected() -> None:
  with pytest.raises(PreconditionError):
    TimeDomainSignal(np.zeros((512, 0, 1, 1), dtype=complex), DWELL, 123.2)


def test_axis_order_is_required() -> None:
  with pytest.raises(PreconditionError):
    TimeDomainSignal(np.zeros((512, 4), dtype=complex), DWELL, 123.2)
  with pytest.raises(PreconditionError):
    TimeDomainSignal(np.zeros((512, 1, 1, 1), dtype=complex), 0.0, 123.2)


def test_field_strength_from_transmitter_frequency() -> None:
  assert _signal().b0 == pytest.approx(2.894, abs=0.001)


def test_coil_combination_phases_and_weights_coils() -> None:
  s = _signal(coils=3)
  amps = np.array([1.0, 0.5, 0.25])
  phases = np.array([0.3, -1.2, 2.0])
  data = s.data * (amps * np.exp(1j*phases))[np.newaxis,np.newaxis,:,np.newaxis]
  combined, ph, w = s.with_data(data).combine_coils()
  assert combined.coils == 1
  assert np.allclose(ph, phases)
  assert np.allclose(w, amps / np.linalg.norm(amps))
  # Coherent sum: the combined signal is the norm of the coil amplitudes times the coil-free signal
  assert np.allclose(combined.data[:,0,0,0], np.linalg.norm(amps) * s.data[:,0,0,0])


def test_single_coil_is_unchanged() -> None:
  s = _signal()
  combined, ph, w = s.combine_coils()
  assert combined is s
  assert ph.tolist() == [0.0]
  assert w.tolist() == [1.0]


def test_weighted_average() -> None:
  s = _signal(averages=3)
  data = s.data.copy()
  data[:,1,0,0] *= 2.0
  data[:,2,0,0] *= 100.0
  spec = s.with_data(data).average(weights=[1.0, 1.0, 0.0])
  assert np.allclose(spec.fid, 1.5 * s.data[:,0,0,0])
  assert np.allclose(spec.provenance.weights, [1.0, 1.0, 0.0])
  with pytest.raises(PreconditionError):
    s.average(weights=[0.0, 0.0, 0.0])
  with pytest.raises(PreconditionError):
    s.average(weights=[1.0, 1.0])


def test_sub_spectrum_selection() -> None:
  s = _signal(subspecs=2)
  assert s.take_subspec(1).subspecs == 1
  with pytest.raises(PreconditionError):
    s.take_subspec(2)
  with pytest.raises(PreconditionError):
    _signal(coils=2).fids()


def test_spectrum_keeps_metadata() -> None:
  spec = _signal(averages=1).to_spectrum()
  assert spec.id == 'sig'
  assert spec.te == 30.0
  assert spec.npts == 512
  with pytest.raises(PreconditionError):
    _signal(averages=2).to_spectrum()
