# mrsproc/store.py - MRSProc - data exchange and results storage
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Storage of signals, basis sets and processing results.

Signals and basis sets use a JSON exchange format (complex values as
[re, im] pairs, `mrsproc_json_format` version tag). Results of a batch run
are stored with joblib in a unique run folder obtained via get_folder.
"""

import errno
import json
import os
import time

import joblib
import numpy as np

from mrsproc.basis import BasisSet
from mrsproc.conditions import ConditionKind
from mrsproc.signal import TimeDomainSignal


def get_folder(folder, subfolder_pattern, timeout=30, delay=.1):
  """Get a unique subfolder for data storage.

  A lock file in folder serialises concurrent callers.

  Parameters
  ----------
      folder (str): Base folder path
      subfolder_pattern (str): Pattern for subfolder names (e.g., "run-%s")
      timeout (int, optional): Timeout in seconds for acquiring lock. Defaults to 30
      delay (float, optional): Delay between lock attempts in seconds. Defaults to 0.1

  Returns
  -------
      str: Path to the created unique subfolder

  Raises
  ------
      RuntimeError: If lock acquisition times out
  """
  os.makedirs(folder, exist_ok=True)
  lockfile = os.path.join(folder, "mrsproc.lock")
  start_time = time.time()
  while True:
    try:
      fd = os.open(lockfile, os.O_CREAT|os.O_EXCL|os.O_RDWR)
      break
    except OSError as e:
      if e.errno != errno.EEXIST:
        raise
      if (time.time() - start_time) >= timeout:
        raise RuntimeError("get_folder timeout.") from e
      time.sleep(delay)
  try:
    idl = 1
    while os.path.exists(os.path.join(folder, subfolder_pattern % str(idl))):
      idl = idl + 1
    subfolder = os.path.join(folder, subfolder_pattern % str(idl))
    os.makedirs(subfolder)
  finally:
    os.close(fd)
    os.unlink(lockfile)
  return subfolder


def _complex_list(a):
  return np.stack((np.real(a), np.imag(a)), axis=-1).tolist()


def _from_complex_list(v):
  a = np.asarray(v, dtype=float)
  return a[...,0] + 1j*a[...,1]


def signal_to_json(signal, filename=None):
  """Serialise a TimeDomainSignal; written to filename if given."""
  data = {
    'id': signal.id,
    'dwelltime': signal.dwelltime,
    'txfrq': signal.txfrq,
    'b0': signal.b0,
    'te': signal.te,
    'tr': signal.tr,
    'centre_ppm': signal.centre_ppm,
    'geometry': signal.geometry,
    'averaged': signal.averaged,
    'shape': list(signal.data.shape),
    'data': _complex_list(signal.data),
    'mrsproc_json_format': 1
  }
  if filename is not None:
    with open(filename, 'w', encoding='utf-8') as f:
      json.dump(data, f, ensure_ascii=False)
  return data


def signal_from_json(data):
  """TimeDomainSignal from a dict (or json filename) written by signal_to_json."""
  if isinstance(data, str):
    with open(data, encoding='utf-8') as f:
      data = json.load(f)
  if data.get('mrsproc_json_format', None) != 1:
    raise RuntimeError("Unknown signal json format")
  samples = _from_complex_list(data['data']).reshape(data['shape'])
  return TimeDomainSignal(samples, data['dwelltime'], data['txfrq'], b0=data['b0'],
                          te=data['te'], tr=data['tr'], centre_ppm=data['centre_ppm'],
                          geometry=data['geometry'], averaged=data['averaged'], id=data['id'])


def save_dataset(dataset, folder):
  """Write the signals of a dataset as metab.json, ref.json, water.json and mm.json."""
  os.makedirs(folder, exist_ok=True)
  for name in ('metab', 'ref', 'water', 'mm'):
    s = getattr(dataset, name)
    if s is not None:
      signal_to_json(s, os.path.join(folder, name + '.json'))


def load_dataset(folder):
  """Dataset from a folder written by save_dataset."""
  from mrsproc.pipeline import Dataset
  signals = {}
  for name in ('metab', 'ref', 'water', 'mm'):
    fn = os.path.join(folder, name + '.json')
    signals[name] = signal_from_json(fn) if os.path.isfile(fn) else None
  if signals['metab'] is None:
    raise RuntimeError(f"No metab.json in {folder}")
  return Dataset(id=os.path.basename(os.path.normpath(folder)), **signals)


def save_basis(basis, filename):
  """Write a basis set, or a dict condition -> basis set, as json."""
  if isinstance(basis, BasisSet):
    basis.to_json(filename)
    return
  data = {c.value: b.to_json() for c, b in basis.items()}
  data['mrsproc_json_format'] = 1
  with open(filename, 'w', encoding='utf-8') as f:
    json.dump(data, f, ensure_ascii=False)


def load_basis(filename):
  """Basis set, or dict condition -> basis set, from a file written by save_basis."""
  with open(filename, encoding='utf-8') as f:
    data = json.load(f)
  if 'names' in data:
    return BasisSet.from_json(data)
  if data.get('mrsproc_json_format', None) != 1:
    raise RuntimeError("Unknown basis json format")
  return {ConditionKind.parse(k): BasisSet.from_json(v) for k, v in data.items()
          if k != 'mrsproc_json_format'}


def save_results(results, folder, name='results'):
  """Store batch results with joblib; returns the file name."""
  fn = os.path.join(folder, name + '.joblib')
  joblib.dump(results, fn)
  return fn


def load_results(filename):
  return joblib.load(filename)
