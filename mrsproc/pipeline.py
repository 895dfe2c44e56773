# mrsproc/pipeline.py - MRSProc - dataset processing and batch runner
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Processing of single datasets and parallel batches.

Per dataset the stages run strictly in sequence: coil combination, water
reference averaging and eddy-current correction, alignment and averaging of
every sub-spectrum, edit classification, polarity, sub-spectrum alignment and
combination, shared referencing (and phasing), residual water removal,
final referencing and quality metrics. Numerical failures of a stage are
recorded with the dataset instead of aborting it.

A batch is validated as a whole before any dataset is processed; datasets
are then independent and run in joblib worker threads sharing the read-only
basis set and options.
"""

import threading
from dataclasses import dataclass, field
from typing import Optional

import joblib

from mrsproc.align import align_averages, robust_spectral_registration
from mrsproc.basis import BasisSet
from mrsproc.cfg import Cfg
from mrsproc.conditions import ConditionKind
from mrsproc.correct import ecc_klose, ecc_with_check, polarity_sign, remove_water_with_retry
from mrsproc.errors import DataInconsistencyError, NumericalFailure, PreconditionError
from mrsproc.fit import fit_concatenated, fit_spectrum, fit_water
from mrsproc.options import Options
from mrsproc.progress import silent
from mrsproc.protocol import protocol_for
from mrsproc.quality import QualityReport, measure
from mrsproc.reference import (apply_reference, has_cr_cho, mm_referencing, phase_cr_cho,
                               reference_landmarks, water_referencing)
from mrsproc.signal import TimeDomainSignal

PAIRED = ('ref', 'water', 'mm')


@dataclass
class Dataset:
  """Signals of one acquisition.

  Attributes
  ----------
      metab (TimeDomainSignal): Water-suppressed metabolite signal
      ref (TimeDomainSignal, optional): Unsuppressed water reference (eddy-current correction)
      water (TimeDomainSignal, optional): Short-TE unsuppressed water
      mm (TimeDomainSignal, optional): Metabolite-nulled acquisition
      id (str, optional): Dataset identifier
  """
  metab: TimeDomainSignal
  ref: Optional[TimeDomainSignal] = None
  water: Optional[TimeDomainSignal] = None
  mm: Optional[TimeDomainSignal] = None
  id: Optional[str] = None

  def __post_init__(self):
    if self.id is None:
      self.id = self.metab.id


@dataclass
class ProcessResult:
  """Processed spectra of one dataset.

  Attributes
  ----------
      index (int): Position of the dataset in its batch
      id (str): Dataset identifier
      spectra (dict): ConditionKind -> Spectrum
      quality (dict): ConditionKind -> QualityMetrics
      switched (bool): Sub-spectra were re-ordered by the classifier
      permutation (tuple): Acquisition index of each role
      ref_shift (float): Total referencing shift of the metabolite conditions (Hz)
      water_components (dict): ConditionKind -> HSVD components used for water removal
      failures (list): (stage, message) of failed stages
  """
  index: int
  id: Optional[str]
  spectra: dict = field(default_factory=dict)
  quality: dict = field(default_factory=dict)
  switched: bool = False
  permutation: tuple = (0,)
  ref_shift: float = 0.0
  water_components: dict = field(default_factory=dict)
  failures: list = field(default_factory=list)

  @property
  def failed(self):
    return len(self.failures) > 0


@dataclass
class BatchItem:
  index: int
  id: Optional[str]
  result: Optional[ProcessResult] = None
  fits: Optional[dict] = None
  error: Optional[str] = None
  cancelled: bool = False

  @property
  def ok(self):
    return self.error is None and not self.cancelled


@dataclass
class BatchResult:
  items: list
  report: QualityReport
  cancelled: bool = False


def _water_spectrum(signal, condition):
  signal, _, _ = signal.combine_coils()
  return align_averages(signal, condition=condition)


def _all(spectra, fn):
  return {k: fn(s) for k, s in spectra.items()}


def _fail(spectra, failures, stage, message):
  failures.append((stage, message))
  return _all(spectra, lambda s: s.replace(provenance=s.provenance.fail(stage, message)))


def process_dataset(dataset, options=None, index=0, progress=silent):
  """Process one dataset into spectra per condition with quality metrics.

  Parameters
  ----------
      dataset (Dataset): Signals of the acquisition
      options (Options, optional): Processing options. Defaults to Options.from_cfg()
      index (int, optional): Position of the dataset in its batch
      progress (callable, optional): Progress observer (stage, message)

  Returns
  -------
      ProcessResult: Spectra, quality metrics and failed stages

  Raises
  ------
      PreconditionError: If the data does not fit the sequence or a reference is malformed
  """
  if options is None:
    options = Options.from_cfg()
  protocol = protocol_for(options)
  name = dataset.id if dataset.id is not None else str(index)
  if dataset.metab.subspecs != protocol.subspecs:
    raise PreconditionError(f"{name}: {protocol.name} needs {protocol.subspecs} sub-spectra, "
                            f"got {dataset.metab.subspecs}")
  progress('dataset', f"{name}: processing {protocol.name} data")
  failures = []
  others = {}

  metab, _, _ = dataset.metab.combine_coils()
  ecc = False
  ref = None
  if dataset.ref is not None:
    ref = _water_spectrum(dataset.ref, ConditionKind.REF)
    if options.vendor in Cfg.val['ecc_check_vendors']:
      metab, ref, ecc = ecc_with_check(metab, ref)
      progress('ecc', f"{name}: eddy-current correction {'kept' if ecc else 'discarded'}")
    else:
      metab, ref = ecc_klose(metab, ref)
      ecc = True
    try:
      others[ConditionKind.REF] = apply_reference(ref, water_referencing(ref))
    except NumericalFailure as e:
      failures.append(('reference', f"REF: {e}"))
      others[ConditionKind.REF] = ref
  if dataset.water is not None:
    w = _water_spectrum(dataset.water, ConditionKind.WATER)
    w, _ = ecc_klose(w, w)
    try:
      others[ConditionKind.WATER] = apply_reference(w, water_referencing(w))
    except NumericalFailure as e:
      failures.append(('reference', f"WATER: {e}"))
      others[ConditionKind.WATER] = w
  if dataset.mm is not None:
    mm, _, _ = dataset.mm.combine_coils()
    mm = robust_spectral_registration(mm, condition=ConditionKind.MM, progress=progress)
    if ref is not None:
      mm, _ = ecc_klose(mm, ref)
    try:
      mm = apply_reference(mm, mm_referencing(mm)[0])
    except NumericalFailure as e:
      failures.append(('reference', f"MM: {e}"))
    others[ConditionKind.MM] = mm

  # Alignment and averaging per sub-spectrum
  subs = []
  for s in range(metab.subspecs):
    sp = robust_spectral_registration(metab, s, landmarks=protocol.landmarks(), progress=progress)
    subs.append(sp.flagged('ecc') if ecc else sp)
    progress('align', f"{name}: sub-spectrum {s} averaged")
  ordered, switched, perm = protocol.classify(subs)
  if switched:
    progress('classify', f"{name}: sub-spectra re-ordered as {perm}")
  if polarity_sign(ordered[0], protocol.polarity_window()) < 0:
    ordered = [s.amp_scale(-1).flagged('polarity_flipped') for s in ordered]
    progress('polarity', f"{name}: polarity flipped")
  ordered = protocol.align_subspectra(ordered)
  spectra = protocol.combine(ordered)

  # Shared referencing and phasing on the reference condition
  rc = protocol.reference_condition()
  ref_shift = 0.0
  try:
    shift, width = reference_landmarks(spectra[rc])
    spectra = _all(spectra, lambda s: apply_reference(s, shift))
    ref_shift += shift
    progress('reference', f"{name}: shift {shift:.2f} Hz, linewidth {width:.2f} Hz")
  except NumericalFailure as e:
    spectra = _fail(spectra, failures, 'reference', str(e))
  if protocol.edited or options.vendor in Cfg.val['phase_cr_cho_vendors']:
    if not has_cr_cho(spectra[rc]):
      # Nothing to phase on; a fit to empty windows gives an arbitrary phase
      spectra = _all(spectra, lambda s: s.flagged('phase_skipped'))
      progress('reference', f"{name}: no Cr/Cho signal, phasing skipped")
    else:
      try:
        _, ph = phase_cr_cho(spectra[rc])
        spectra = _all(spectra, lambda s: s.add_phase(-ph).flagged('phased'))
        progress('reference', f"{name}: phase {ph:.1f} deg")
      except NumericalFailure as e:
        spectra = _fail(spectra, failures, 'phase', str(e))

  # Residual water removal
  components = {}
  for k in list(spectra.keys()):
    try:
      s, components[k] = remove_water_with_retry(spectra[k], options.water_band,
                                                 options.water_components,
                                                 options.water_components_min, progress=progress)
      spectra[k] = s.dc_correct()
    except NumericalFailure as e:
      failures.append(('water', f"{k.name}: {e}"))
      spectra[k] = spectra[k].replace(provenance=spectra[k].provenance.fail('water', str(e)))
      components[k] = 0
    progress('water', f"{name}: {k.name} with {components[k]} components")

  # Final referencing after water removal
  try:
    shift, _ = reference_landmarks(spectra[rc])
    spectra = _all(spectra, lambda s: apply_reference(s, shift))
    ref_shift += shift
  except NumericalFailure as e:
    spectra = _fail(spectra, failures, 'reference', str(e))
  spectra.update(others)

  quality = {}
  for k, s in spectra.items():
    try:
      quality[k] = measure(s, protocol.quality_window(k), dataset=index, condition=k.name)
    except (PreconditionError, NumericalFailure) as e:
      failures.append(('quality', f"{k.name}: {e}"))
  progress('dataset', f"{name}: done" + (f", {len(failures)} failed stages" if failures else ""))
  return ProcessResult(index=index, id=dataset.id, spectra=spectra, quality=quality,
                       switched=switched, permutation=tuple(perm), ref_shift=ref_shift,
                       water_components=components, failures=failures)


def fit_dataset(result, basis, options=None, progress=silent):
  """Fit the processed conditions of a dataset.

  Parameters
  ----------
      result (ProcessResult): Processed dataset
      basis (BasisSet or dict): One basis set for all conditions, or ConditionKind -> BasisSet
      options (Options, optional): Fit options (fit_style selects separate or concatenated)
      progress (callable, optional): Progress observer (stage, message)

  Returns
  -------
      dict: ConditionKind -> FitParameters (jointly fitted conditions share one result)
  """
  if options is None:
    options = Options.from_cfg()
  protocol = protocol_for(options)
  rc = protocol.reference_condition()

  def basis_for(k):
    if isinstance(basis, BasisSet):
      return basis
    if k not in basis:
      raise PreconditionError(f"No basis set for condition {k.name}")
    return basis[k]

  fits = {}
  ref_shift = None
  for group in protocol.fit_conditions(options.fit_style):
    if len(group) == 1:
      k = group[0]
      p = fit_spectrum(result.spectra[k], basis_for(k), options, ref_shift=ref_shift,
                       progress=progress)
      if ref_shift is None:
        # Later (difference) conditions reuse the shift of the first fit
        ref_shift = p.ref_shift if p.ok else 0.0
      fits[k] = p
    else:
      order = sorted(group, key=lambda c: c != rc)
      p = fit_concatenated({c: result.spectra[c] for c in order}, {c: basis_for(c) for c in order},
                           options, progress=progress)
      for c in group:
        fits[c] = p
  for k in (ConditionKind.REF, ConditionKind.WATER):
    if k in result.spectra:
      fits[k] = fit_water(result.spectra[k], options, progress=progress)
  return fits


def validate_batch(datasets, basis=None, options=None):
  """Check a batch for consistency before processing.

  Raises
  ------
      DataInconsistencyError: If sample counts differ between datasets, paired
          signals or the basis set, if paired signals are given for some
          datasets only, if paired signals differ in their number of
          averages, or if a dataset has the wrong number of sub-spectra
  """
  if options is None:
    options = Options.from_cfg()
  protocol = protocol_for(options)
  if len(datasets) == 0:
    return
  npts = datasets[0].metab.npts
  for k, d in enumerate(datasets):
    if d.metab.npts != npts:
      raise DataInconsistencyError(f"Dataset {k} has {d.metab.npts} samples, dataset 0 {npts}")
    if d.metab.subspecs != protocol.subspecs:
      raise DataInconsistencyError(f"Dataset {k} has {d.metab.subspecs} sub-spectra, "
                                   f"{protocol.name} needs {protocol.subspecs}")
    for p in PAIRED:
      s = getattr(d, p)
      if s is not None and s.npts != npts:
        raise DataInconsistencyError(f"Dataset {k}: {p} has {s.npts} samples, metabolites {npts}")
  for p in PAIRED:
    given = [getattr(d, p) is not None for d in datasets]
    if any(given) and not all(given):
      raise DataInconsistencyError(f"Paired {p} signals given for {sum(given)} of "
                                   f"{len(datasets)} datasets")
    averages = {getattr(d, p).averages for d in datasets if getattr(d, p) is not None}
    if len(averages) > 1:
      raise DataInconsistencyError(f"Paired {p} signals with different numbers of averages "
                                   f"{sorted(averages)}")
  if basis is not None:
    bases = [basis] if isinstance(basis, BasisSet) else list(basis.values())
    for b in bases:
      if b.npts != npts:
        raise DataInconsistencyError(f"Basis set has {b.npts} samples, data {npts}")


def run_batch(datasets, basis=None, options=None, n_jobs=1, cancel=None, progress=silent):
  """Process (and fit, if a basis is given) a batch of datasets.

  Parameters
  ----------
      datasets (list): Dataset objects
      basis (BasisSet or dict, optional): Basis for fitting; no fitting without it
      options (Options, optional): Options for all datasets
      n_jobs (int, optional): Worker threads (joblib). Defaults to 1
      cancel (threading.Event, optional): Set to stop before the next dataset starts
      progress (callable, optional): Progress observer (stage, message)

  Returns
  -------
      BatchResult: Items in input order and the quality report

  Raises
  ------
      DataInconsistencyError: If the batch is inconsistent (nothing is processed)
  """
  if options is None:
    options = Options.from_cfg()
  validate_batch(datasets, basis, options)
  if cancel is None:
    cancel = threading.Event()
  progress('batch', f"{len(datasets)} datasets, {n_jobs} jobs")

  def run(k, d):
    if cancel.is_set():
      return BatchItem(index=k, id=d.id, cancelled=True)
    try:
      r = process_dataset(d, options, index=k, progress=progress)
      fits = None if basis is None else fit_dataset(r, basis, options, progress=progress)
    except (RuntimeError, ValueError, ArithmeticError) as e:
      progress('failed', f"{d.id}: {e}")
      return BatchItem(index=k, id=d.id, error=f"{type(e).__name__}: {e}")
    return BatchItem(index=k, id=d.id, result=r, fits=fits)

  items = joblib.Parallel(n_jobs=n_jobs, prefer='threads')(
    joblib.delayed(run)(k, d) for k, d in enumerate(datasets))

  report = QualityReport()
  for it in items:
    if it.error is not None:
      report.add_failure(it.index, it.id, it.error)
    if it.result is not None:
      report.add(it.result.quality.values())
      for stage, message in it.result.failures:
        report.add_failure(it.index, it.id, f"{stage}: {message}")
    if it.fits is not None:
      done = set()
      for k, p in it.fits.items():
        if not p.ok and id(p) not in done:
          done.add(id(p))
          report.add_failure(it.index, it.id, f"fit {k.name}: {p.message}")
  cancelled = cancel.is_set()
  progress('batch', f"{sum(it.ok for it in items)} of {len(items)} datasets processed" +
           (", cancelled" if cancelled else ""))
  return BatchResult(items=items, report=report, cancelled=cancelled)
