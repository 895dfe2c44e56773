# tests/test_basis.py - MRSProc - basis sets
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

import numpy as np
import pytest

from mrsproc.basis import MM_LIPIDS, BasisSet
from mrsproc.conditions import ConditionKind
from mrsproc.errors import DataInconsistencyError, PreconditionError
from mrsproc.simulate import edited_bases, synthetic_basis
from mrsproc.spectrum import Spectrum


def _basis(names=('Cr', 'NAA', 'Cho'), **kwargs):
  return synthetic_basis(list(names), **kwargs)


def test_duplicate_names_are_rejected() -> None:
  fids = np.ones((128, 2), dtype=complex)
  with pytest.raises(PreconditionError):
    BasisSet(['Cr', 'Cr'], fids, 1/2000, 123.2)
  with pytest.raises(PreconditionError):
    BasisSet(['Cr'], fids, 1/2000, 123.2)


def test_normalise_once() -> None:
  b = _basis()
  n = b.normalise()
  spec, _ = n.spectra()
  assert n.normalised
  assert np.max(np.real(spec)) == pytest.approx(1.0)
  assert n.normalise() is n
  assert n.scale == pytest.approx(np.max(np.real(b.spectra()[0])))


def test_subset_and_index() -> None:
  b = _basis()
  s = b.subset(['Cho', 'Cr'])
  assert s.names == ['Cho', 'Cr']
  assert np.allclose(s.fid('Cr'), b.fid('Cr'))
  with pytest.raises(PreconditionError):
    b.index('GABA')


def test_nonzero_drops_cancelled_functions() -> None:
  diff = edited_bases('mega', 'GABA', names=['Cr', 'NAA', 'GABA'], npts=1024)[ConditionKind.DIFF1]
  kept = diff.nonzero()
  assert 'Cr' not in kept
  assert kept.names == ['NAA', 'GABA']
  zero = BasisSet(['Cr'], np.zeros(64, dtype=complex), 1/2000, 123.2)
  with pytest.raises(PreconditionError):
    zero.nonzero()


def test_add_checks_samples() -> None:
  b = _basis(npts=512)
  with pytest.raises(DataInconsistencyError):
    b.add('Lac', np.zeros(256))
  assert b.add('Lac', np.zeros(512)).names[-1] == 'Lac'


def test_macromolecules_need_creatine() -> None:
  b = _basis().add_macromolecules()
  for name in MM_LIPIDS:
    assert name in b
  assert len(b) == 3 + len(MM_LIPIDS)
  with pytest.raises(PreconditionError):
    _basis(names=('NAA',)).add_macromolecules()


def test_resample_matching_grid_truncates_and_fills() -> None:
  b = _basis(npts=1024)
  longer = Spectrum(np.zeros(2048), b.dwelltime, b.txfrq, centre_ppm=b.centre_ppm)
  r = b.resample(longer)
  assert r.npts == 2048
  assert np.allclose(r.fids[:1024,:], b.fids)
  assert np.allclose(r.fids[1024:,:], 0.0)
  shorter = Spectrum(np.zeros(512), b.dwelltime, b.txfrq, centre_ppm=b.centre_ppm)
  assert np.allclose(b.resample(shorter).fids, b.fids[:512,:])


def test_resample_interpolates_other_grid() -> None:
  b = _basis(npts=4096, dwelltime=1/4000)
  target = Spectrum(np.zeros(2048), 1/2000, 123.2, centre_ppm=b.centre_ppm)
  r = b.resample(target, fit_range=(0.2, 4.2))
  assert r.dwelltime == target.dwelltime
  spec, ppm = r.spectra()
  k = r.index('NAA')
  assert ppm[np.argmax(np.real(spec[:,k]))] == pytest.approx(2.008, abs=0.01)


def test_resample_rejects_other_field() -> None:
  b = _basis()
  with pytest.raises(DataInconsistencyError):
    b.resample(Spectrum(np.zeros(b.npts), b.dwelltime, 297.2))


def test_json(tmp_path) -> None:
  b = _basis(npts=256).normalise()
  fn = str(tmp_path / 'basis.json')
  b.to_json(fn)
  r = BasisSet.from_json(fn)
  assert r.names == b.names
  assert r.normalised
  assert np.allclose(r.fids, b.fids)
