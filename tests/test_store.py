# tests/test_store.py - MRSProc - storage of signals, basis sets and results
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

import os

import numpy as np
import pytest

from mrsproc.conditions import ConditionKind
from mrsproc.pipeline import BatchItem, BatchResult
from mrsproc.quality import QualityMetrics, QualityReport
from mrsproc.simulate import edited_bases, synthetic_basis, synthetic_dataset, synthetic_signal
from mrsproc.store import (get_folder, load_basis, load_dataset, load_results, save_basis,
                           save_dataset, save_results, signal_from_json, signal_to_json)


def test_get_folder_is_unique(tmp_path) -> None:
  base = str(tmp_path / 'runs')
  a = get_folder(base, 'run-%s')
  b = get_folder(base, 'run-%s')
  assert os.path.basename(a) == 'run-1'
  assert os.path.basename(b) == 'run-2'
  assert os.path.isdir(a) and os.path.isdir(b)
  assert not os.path.exists(os.path.join(base, 'mrsproc.lock'))


def test_get_folder_times_out_on_held_lock(tmp_path) -> None:
  base = tmp_path / 'runs'
  base.mkdir()
  (base / 'mrsproc.lock').write_text('')
  with pytest.raises(RuntimeError):
    get_folder(str(base), 'run-%s', timeout=0.2, delay=0.05)


def test_signal_json(tmp_path) -> None:
  s = synthetic_signal(averages=2, coils=2, npts=128, noise=0.1, seed=3, id='sig')
  fn = str(tmp_path / 'sig.json')
  signal_to_json(s, fn)
  r = signal_from_json(fn)
  assert r.id == 'sig'
  assert r.data.shape == (128, 2, 2, 1)
  assert np.allclose(r.data, s.data)
  assert r.txfrq == s.txfrq
  assert r.te == s.te
  with pytest.raises(RuntimeError):
    signal_from_json({'data': []})


def test_dataset_folder(tmp_path) -> None:
  d = synthetic_dataset(averages=2, npts=128, seed=1, id='d1')
  folder = str(tmp_path / 'd1')
  save_dataset(d, folder)
  assert sorted(os.listdir(folder)) == ['metab.json', 'ref.json']
  r = load_dataset(folder)
  assert r.id == 'd1'
  assert r.water is None
  assert np.allclose(r.ref.data, d.ref.data)
  with pytest.raises(RuntimeError):
    load_dataset(str(tmp_path))


def test_basis_files(tmp_path) -> None:
  fn = str(tmp_path / 'basis.json')
  save_basis(synthetic_basis(['Cr', 'NAA'], npts=128), fn)
  b = load_basis(fn)
  assert b.names == ['Cr', 'NAA']
  bases = edited_bases('mega', 'GABA', names=['Cr', 'GABA'], npts=128)
  save_basis(bases, fn)
  r = load_basis(fn)
  assert set(r) == {ConditionKind.A, ConditionKind.B, ConditionKind.DIFF1, ConditionKind.SUM}
  assert r[ConditionKind.DIFF1].condition == ConditionKind.DIFF1
  assert np.allclose(r[ConditionKind.SUM].fids, bases[ConditionKind.SUM].fids)


def test_results(tmp_path) -> None:
  report = QualityReport()
  report.add([QualityMetrics(0, 'A', 12.0, 4.0, 0.03)])
  result = BatchResult(items=[BatchItem(0, 'a')], report=report)
  fn = save_results(result, str(tmp_path))
  assert fn.endswith('results.joblib')
  r = load_results(fn)
  assert r.items[0].id == 'a'
  assert r.report.metrics[0].snr == 12.0
