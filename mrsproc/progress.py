# mrsproc/progress.py - MRSProc - progress reporting
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Progress observers.

Processing code never prints; it calls an observer `progress(stage, message)`.
Any callable with that signature works. VerbosePrinter maps stages onto the
usual verbosity levels (0: none; 1: main text; 3: detailed text).
"""

import threading

from tqdm import tqdm

# Stages reported at verbosity 1; everything else is detailed (level 3)
MAIN_STAGES = frozenset(['batch', 'dataset', 'fit', 'failed'])


def silent(stage, message):
  pass


class VerbosePrinter:
  """Print progress messages as `# stage: message` depending on verbosity."""

  def __init__(self, verbose=1, file=None):
    self.verbose = verbose
    self.file = file
    self._lock = threading.Lock()

  def __call__(self, stage, message):
    level = 1 if stage in MAIN_STAGES else 3
    if self.verbose >= level:
      with self._lock:
        print(f"# {stage}: {message}", file=self.file)


class Recorder:
  """Collect progress messages, e.g. for tests or reports."""

  def __init__(self):
    self.events = []
    self._lock = threading.Lock()

  def __call__(self, stage, message):
    with self._lock:
      self.events.append((stage, message))

  def stages(self):
    return [s for s, _ in self.events]


class ProgressBar:
  """Dataset progress bar (tqdm) that also prints messages like VerbosePrinter.

  Messages are written with tqdm.write, so they do not break the bar.
  """

  def __init__(self, total, verbose=1, desc='Datasets'):
    self.bar = tqdm(total=total, desc=desc, disable=verbose < 1, leave=False)
    self.verbose = verbose
    self._lock = threading.Lock()

  def __call__(self, stage, message):
    level = 1 if stage in MAIN_STAGES else 3
    with self._lock:
      if self.verbose >= level:
        tqdm.write(f"# {stage}: {message}")
      if stage == 'dataset' and ': done' in message:
        self.bar.update(1)

  def close(self):
    self.bar.close()
