# tests/test_protocol.py - MRSProc - edit classification and combination
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

import itertools

import numpy as np
import pytest

from mrsproc.conditions import ConditionKind
from mrsproc.errors import PreconditionError, UnsupportedTargetError
from mrsproc.options import Options
from mrsproc.protocol import HERCULES, HERMES, MEGA, UnEdited, make_protocol, protocol_for
from mrsproc.simulate import ROLES, synthetic_signal

K = ConditionKind


def _subspectra(sequence, target='GABA'):
  roles = list(ROLES[sequence].keys())
  signal = synthetic_signal(sequence=sequence, target=target, averages=1, water=50.0, seed=1)
  return [signal.take_subspec(k).average() for k in range(len(roles))]


def test_make_protocol() -> None:
  assert isinstance(make_protocol('unedited'), UnEdited)
  assert make_protocol('mega', 'GSH').target == 'GSH'
  assert isinstance(make_protocol('hercules'), HERCULES)
  assert isinstance(protocol_for(Options(sequence='hermes')), HERMES)
  with pytest.raises(UnsupportedTargetError):
    make_protocol('mega', 'Lac')
  with pytest.raises(UnsupportedTargetError):
    make_protocol('press')


@pytest.mark.parametrize('target', ['GABA', 'GSH'])
def test_mega_classification_ignores_input_order(target) -> None:
  off, on = _subspectra('mega', target)
  protocol = MEGA(target)
  ordered, switched, perm = protocol.classify([off, on])
  assert not switched
  assert perm == (0, 1)
  ordered2, switched2, perm2 = protocol.classify([on, off])
  assert switched2
  assert perm2 == (1, 0)
  for a, b in zip(ordered, ordered2):
    assert np.allclose(a.fid, b.fid)
  assert ordered2[0].condition == K.OFF
  assert ordered2[1].condition == K.ON
  assert ordered2[0].provenance.order_switched


def test_hermes_classification_recovers_roles() -> None:
  subs = _subspectra('hermes')
  protocol = HERMES()
  for order in itertools.permutations(range(4)):
    ordered, switched, perm = protocol.classify([subs[k] for k in order])
    assert switched == (order != (0, 1, 2, 3))
    for role, s in enumerate(ordered):
      assert np.allclose(s.fid, subs[role].fid)
    assert [order[p] for p in perm] == [0, 1, 2, 3]


def test_classification_needs_all_sub_spectra() -> None:
  subs = _subspectra('hermes')
  with pytest.raises(PreconditionError):
    HERMES().classify(subs[:2])
  with pytest.raises(PreconditionError):
    MEGA().combine(subs[:1])


def test_mega_combination() -> None:
  off, on = _subspectra('mega')
  out = MEGA().combine([off, on])
  assert set(out) == {K.A, K.B, K.DIFF1, K.SUM}
  assert np.allclose(out[K.DIFF1].fid, on.fid - off.fid)
  assert np.allclose(out[K.SUM].fid, on.fid + off.fid)
  assert out[K.DIFF1].condition == K.DIFF1


def test_hermes_combination() -> None:
  a, b, c, d = _subspectra('hermes')
  out = HERMES().combine([a, b, c, d])
  assert np.allclose(out[K.DIFF1].fid, b.fid + d.fid - a.fid - c.fid)
  assert np.allclose(out[K.DIFF2].fid, c.fid + d.fid - a.fid - b.fid)
  assert np.allclose(out[K.SUM].fid, a.fid + b.fid + c.fid + d.fid)


def test_gaba_difference_shows_edited_signal() -> None:
  off, on = _subspectra('mega')
  diff = MEGA().combine([off, on])[K.DIFF1]
  gaba, _ = diff.freq_range(2.95, 3.07)
  naa, _ = diff.freq_range(1.95, 2.05)
  assert np.max(np.real(gaba)) > 0.0
  assert np.min(np.real(naa)) < 0.0


def test_sub_spectrum_alignment_removes_offset() -> None:
  off, on = _subspectra('mega')
  aligned = MEGA().align_subspectra([off, on.freq_shift(1.5)])
  assert aligned[0] is off
  spec, _ = aligned[1].freq_range(3.1, 3.3)
  ref, _ = on.freq_range(3.1, 3.3)
  assert np.max(np.abs(spec - ref)) < 0.05 * np.max(np.abs(ref))


def test_fit_conditions() -> None:
  assert UnEdited().fit_conditions('separate') == [(K.A,)]
  assert MEGA().fit_conditions('separate') == [(K.A,), (K.DIFF1,)]
  assert MEGA().fit_conditions('concatenated') == [(K.DIFF1, K.SUM)]
  assert HERMES().fit_conditions('concatenated') == [(K.DIFF1, K.DIFF2, K.SUM)]


def test_reference_condition_and_windows() -> None:
  assert UnEdited().reference_condition() == K.A
  assert MEGA().reference_condition() == K.SUM
  assert UnEdited().polarity_window() == (1.9, 2.1)
  assert HERMES().polarity_window() == (2.8, 3.2)
  assert MEGA().quality_window(K.REF) == (4.2, 5.2)
  assert MEGA().quality_window('diff1') == (2.8, 3.2)
  assert UnEdited().quality_window(K.A) == (1.8, 2.2)
