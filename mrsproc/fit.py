# mrsproc/fit.py - MRSProc - linear-combination model fitting
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Staged linear-combination model fitting of processed spectra.

The real part of the spectrum inside the fit range is modelled as

  Re( exp(i (ph0 + ph1 (ppm - centre))) * sum_j a_j FT[ b_j(t) L_j(t) G(t) ] ) + baseline(ppm)

with basis FIDs b_j, Lorentzian damping and frequency shift
L_j(t) = exp(-pi l_j t + 2 pi i d_j t), a common Gaussian damping
G(t) = exp(-(pi g t)^2 / (4 ln 2)) and a cubic B-spline baseline. The
amplitudes a_j >= 0 and the baseline coefficients enter linearly and are
solved exactly for every set of nonlinear parameters (variable
projection); the nonlinear parameters are optimised with lmfit.

Stages: zero-fill and resample the basis, reference (unless a shift is
given), reduced preliminary fit (a few strong singlets, shared damping and
shift), full preliminary fit (all basis functions, individual damping and
shift). A non-finite objective yields a failed FitParameters sentinel.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import lmfit
import numpy as np
from scipy.interpolate import BSpline
from scipy.optimize import lsq_linear

from mrsproc import molecules
from mrsproc.basis import MM_LIPIDS, BasisSet
from mrsproc.cfg import Cfg
from mrsproc.conditions import ConditionKind
from mrsproc.errors import NumericalFailure, PreconditionError
from mrsproc.options import Options
from mrsproc.progress import silent
from mrsproc.reference import apply_reference, reference_landmarks, water_referencing
from mrsproc.spectrum import npfft


class FitState(Enum):
  UNFIT = 'unfit'
  REFERENCED = 'referenced'
  PRELIMINARY_REDUCED = 'preliminary_reduced'
  PRELIMINARY_FULL = 'preliminary_full'
  COMPLETE = 'complete'
  FAILED = 'failed'

TRANSITIONS = {
  FitState.UNFIT: {FitState.REFERENCED, FitState.FAILED},
  FitState.REFERENCED: {FitState.PRELIMINARY_REDUCED, FitState.FAILED},
  FitState.PRELIMINARY_REDUCED: {FitState.PRELIMINARY_FULL, FitState.FAILED},
  FitState.PRELIMINARY_FULL: {FitState.COMPLETE, FitState.FAILED},
  FitState.COMPLETE: set(),
  FitState.FAILED: set()
}


def advance(state, new_state):
  """Next fit state; raises RuntimeError for transitions the fit never takes."""
  if new_state not in TRANSITIONS[state]:
    raise RuntimeError(f"Illegal fit state transition {state.value} -> {new_state.value}")
  return new_state


@dataclass(frozen=True)
class FitParameters:
  """Result of a model fit.

  Attributes
  ----------
      names (tuple): Basis function names
      amplitudes (numpy.ndarray): Non-negative amplitude per basis function
      baseline (numpy.ndarray): Spline coefficients, one row per fitted condition
      ph0 (float): Zero-order phase (degrees)
      ph1 (float): First-order phase (degrees/ppm)
      gauss_lb (float): Gaussian line broadening FWHM (Hz)
      lorentz_lb (numpy.ndarray): Lorentzian line broadening per basis function (Hz)
      freq_shift (numpy.ndarray): Frequency shift per basis function (Hz)
      ref_shift (float): Referencing shift removed before fitting (Hz)
      ref_fwhm (float): Linewidth measured while referencing (Hz)
      state (FitState): COMPLETE or FAILED
      conditions (tuple): Conditions fitted jointly
      fit_range (tuple): ppm range of the fit
      knot_spacing (float): Baseline knot spacing (ppm)
      residual_norm (float): Norm of the residual in the fit range
      message (str): Reason for a failure
      prelim (FitParameters, optional): Result of the reduced preliminary stage
  """
  names: Tuple[str, ...]
  amplitudes: np.ndarray
  baseline: np.ndarray
  ph0: float
  ph1: float
  gauss_lb: float
  lorentz_lb: np.ndarray
  freq_shift: np.ndarray
  ref_shift: float
  ref_fwhm: float
  state: FitState
  conditions: Tuple[ConditionKind, ...] = (ConditionKind.A,)
  fit_range: Tuple[float, float] = (0.2, 4.2)
  knot_spacing: float = 0.4
  residual_norm: float = np.nan
  message: str = ''
  prelim: Optional['FitParameters'] = field(default=None, repr=False)

  @property
  def ok(self):
    return self.state == FitState.COMPLETE

  def amplitude(self, name):
    if name not in self.names:
      raise PreconditionError(f"No amplitude for {name}")
    return float(self.amplitudes[self.names.index(name)])

  def ratio(self, name, reference='Cr'):
    return self.amplitude(name) / self.amplitude(reference)

  @staticmethod
  def failed(names, message, conditions=(ConditionKind.A,), ref_shift=np.nan, ref_fwhm=np.nan,
             fit_range=(0.2, 4.2), knot_spacing=0.4):
    """Sentinel for a failed fit: every parameter NaN, state FAILED."""
    k = len(names)
    return FitParameters(names=tuple(names), amplitudes=np.full(k, np.nan),
                         baseline=np.full((len(conditions), 0), np.nan), ph0=np.nan, ph1=np.nan,
                         gauss_lb=np.nan, lorentz_lb=np.full(k, np.nan),
                         freq_shift=np.full(k, np.nan), ref_shift=ref_shift, ref_fwhm=ref_fwhm,
                         state=FitState.FAILED, conditions=tuple(conditions),
                         fit_range=tuple(fit_range), knot_spacing=knot_spacing, message=message)


def spline_baseline(x, low, high, knot_spacing):
  """Cubic B-spline design matrix on x with knots every knot_spacing ppm in [low, high]."""
  n_int = max(1, int(np.ceil((high - low) / knot_spacing - Cfg.val['num_eps'])))
  knots = np.concatenate(([low]*3, np.linspace(low, high, n_int+1), [high]*3))
  return BSpline.design_matrix(np.clip(x, low, high), knots, 3).toarray()


class LinearCombinationModel:
  """Model of one or more spectra sharing amplitudes and nonlinear parameters.

  Each condition has its own basis set (same names) and its own baseline.
  """

  def __init__(self, spectra, bases, fit_range, knot_spacing):
    self.spectra = list(spectra)
    self.bases = list(bases)
    s0 = self.spectra[0]
    self.names = list(self.bases[0].names)
    for s, b in zip(self.spectra, self.bases):
      if s.npts != s0.npts or b.npts != s0.npts:
        raise PreconditionError("Jointly fitted spectra and bases need equal numbers of samples")
      if b.names != self.names:
        raise PreconditionError("Jointly fitted bases need identical basis functions")
    self.t = np.arange(s0.npts) * s0.dwelltime
    ppm = s0.ppm_axis()
    self.idx = (ppm >= fit_range[0]) & (ppm <= fit_range[1])
    if np.count_nonzero(self.idx) < 8:
      raise PreconditionError(f"Fit range {fit_range} has too few points")
    self.x = ppm[self.idx]
    self.centre_ppm = s0.centre_ppm
    self.ys = [np.real(s.get_f()[0][self.idx]) for s in self.spectra]
    self.y = np.concatenate(self.ys)
    if not np.all(np.isfinite(self.y)):
      raise NumericalFailure("Non-finite spectrum in fit range")
    self.baseline = spline_baseline(self.x, fit_range[0], fit_range[1], knot_spacing)
    self.fit_range = tuple(fit_range)
    self.knot_spacing = knot_spacing
    self.nk = len(self.names)
    self.nb = self.baseline.shape[1]

  def columns(self, ph0, ph1, gauss, lorentz, shift):
    """Real model columns (points x basis functions) for each condition."""
    t = self.t
    mod = np.exp(np.outer(t, -np.pi*lorentz + 2j*np.pi*shift)) * \
          np.exp(-(np.pi*gauss*t)**2 / (4.0*np.log(2.0)))[:,np.newaxis]
    phase = np.exp(1j*np.pi/180.0*(ph0 + ph1*(self.x - self.centre_ppm)))[:,np.newaxis]
    cols = []
    for b in self.bases:
      spec = npfft.fftshift(npfft.fft(b.fids * mod, axis=0), axes=0)[self.idx,:]
      cols.append(np.real(phase * spec))
    return cols

  def design(self, cols):
    m = len(self.x)
    nc = len(cols)
    a = np.zeros((m*nc, self.nk + nc*self.nb))
    for c, col in enumerate(cols):
      a[c*m:(c+1)*m,:self.nk] = col
      a[c*m:(c+1)*m,self.nk+c*self.nb:self.nk+(c+1)*self.nb] = self.baseline
    return a

  def solve(self, cols):
    """Amplitudes (>= 0) and baseline coefficients for given model columns.

    Returns
    -------
        tuple: (amplitudes, baseline coefficients (conditions x knots), residual)
    """
    a = self.design(cols)
    if not np.all(np.isfinite(a)):
      raise NumericalFailure("Non-finite model columns")
    lb = np.concatenate((np.zeros(self.nk), np.full(a.shape[1]-self.nk, -np.inf)))
    ub = np.full(a.shape[1], np.inf)
    res = lsq_linear(a, self.y, bounds=(lb, ub), method='bvls')
    x = res.x
    return x[:self.nk], x[self.nk:].reshape(len(cols), self.nb), a @ x - self.y

  def evaluate(self, ph0, ph1, gauss, lorentz, shift):
    cols = self.columns(ph0, ph1, gauss, lorentz, shift)
    return self.solve(cols)


def _unpack(v, nk, full):
  if full:
    lorentz = np.array([v[f'lorentz_{k}'] for k in range(nk)])
    shift = v['shift'] + np.array([v[f'shift_{k}'] for k in range(nk)])
  else:
    lorentz = np.full(nk, v['lorentz'])
    shift = np.full(nk, v['shift'])
  return v['ph0'], v['ph1'], v['gauss'], lorentz, shift


def _nonlinear_fit(model, para, full, max_nfev):
  nk = model.nk

  def residual(p):
    _, _, r = model.evaluate(*_unpack(p.valuesdict(), nk, full))
    return r

  res = lmfit.minimize(residual, para, method='least_squares', max_nfev=max_nfev)
  v = res.params.valuesdict()
  args = _unpack(v, nk, full)
  amps, base, r = model.evaluate(*args)
  if not (np.all(np.isfinite(amps)) and np.all(np.isfinite(r))):
    raise NumericalFailure("Non-finite fit result")
  return v, args, amps, base, r


def _coarse_phase(model, gauss, lorentz, shift):
  # Zero-order phase with the smallest residual on a 30 degree grid
  best = (np.inf, 0.0)
  for ph0 in np.arange(-180.0, 180.0, 30.0):
    _, _, r = model.evaluate(ph0, 0.0, gauss, np.full(model.nk, lorentz), np.full(model.nk, shift))
    c = np.sum(r**2)
    if np.isfinite(c) and c < best[0]:
      best = (c, ph0)
  return best[1]


def _result(model, args, amps, base, r, state, ref_shift, ref_fwhm, conditions, prelim=None):
  ph0, ph1, gauss, lorentz, shift = args
  return FitParameters(names=tuple(model.names), amplitudes=np.asarray(amps), baseline=base,
                       ph0=float(ph0), ph1=float(ph1), gauss_lb=float(gauss),
                       lorentz_lb=np.asarray(lorentz), freq_shift=np.asarray(shift),
                       ref_shift=float(ref_shift), ref_fwhm=float(ref_fwhm), state=state,
                       conditions=tuple(conditions), fit_range=model.fit_range,
                       knot_spacing=model.knot_spacing,
                       residual_norm=float(np.linalg.norm(r)), prelim=prelim)


def _union_names(bases):
  names = []
  for b in bases:
    for n in b.names:
      if n not in names:
        names.append(n)
  out = []
  for b in bases:
    missing = [n for n in names if n not in b.names]
    for n in missing:
      b = b.add(n, np.zeros(b.npts, dtype=complex))
    out.append(b.subset(names))
  return out


def prepare_basis(basis, options, normalise=True):
  """Basis set as fitted: vanishing functions dropped, macromolecules added,
  normalised and restricted to the included names."""
  if options.include is not None:
    missing = [n for n in options.include if n not in basis]
    if missing:
      raise PreconditionError(f"Included basis functions {missing} not in basis set")
  basis = basis.nonzero()
  if options.fit_mm and 'Cr' in basis:
    basis = basis.add_macromolecules()
  if normalise:
    basis = basis.normalise()
  if options.include is not None:
    keep = set(options.include)
    if options.fit_mm:
      keep |= set(MM_LIPIDS)
    basis = basis.subset([n for n in basis.names if n in keep])
  return basis


def water_basis(spectrum):
  """Single undamped water resonance at 4.68 ppm on the grid of spectrum."""
  t = np.arange(spectrum.npts) * spectrum.dwelltime
  fid = np.exp(2j*np.pi*spectrum.hz(molecules.WATER_PPM)*t)
  return BasisSet(['H2O'], fid, spectrum.dwelltime, spectrum.txfrq,
                  centre_ppm=spectrum.centre_ppm).normalise()


def _fit(spectra, bases, conditions, options, ref_shift=None, water=False, progress=silent):
  """Run all fit stages for jointly fitted spectra."""
  fit_range = options.fit_range_water if water else options.fit_range
  names = list(bases[0].names)
  state = FitState.UNFIT
  zp = Cfg.val['fit_zeropad']
  spectra = [s.zeropad(zp) for s in spectra]
  ref_fwhm = np.nan

  def failed(message):
    progress('failed', f"fit {[c.name for c in conditions]}: {message}")
    return FitParameters.failed(names, message, conditions=conditions,
                                ref_shift=np.nan if ref_shift is None else ref_shift,
                                ref_fwhm=ref_fwhm, fit_range=fit_range,
                                knot_spacing=options.knot_spacing)

  try:
    bases = [b.resample(s, fit_range) for b, s in zip(bases, spectra)]
    # Initial referencing on the first condition
    if ref_shift is None:
      if water:
        ref_shift = water_referencing(spectra[0])
      else:
        ref_shift, ref_fwhm = reference_landmarks(spectra[0])
    spectra = [apply_reference(s, ref_shift) for s in spectra]
  except NumericalFailure as e:
    return failed(str(e))
  state = advance(state, FitState.REFERENCED)
  progress('fit', f"referenced {[c.name for c in conditions]} by {ref_shift:.2f} Hz")

  # Reduced preliminary fit
  if water:
    reduced = names
  else:
    reduced = [n for n in Cfg.val['fit_reduced_basis'] if n in names]
    if len(reduced) == 0:
      reduced = names
  try:
    model = LinearCombinationModel(spectra, [b.subset(reduced) for b in bases], fit_range,
                                   options.knot_spacing)
    para = lmfit.Parameters()
    para.add('ph0', value=_coarse_phase(model, 1.0, 1.0, 0.0),
             min=-Cfg.val['fit_ph0_bound']-180.0, max=Cfg.val['fit_ph0_bound']+180.0)
    para.add('ph1', value=0.0, min=-Cfg.val['fit_ph1_bound'], max=Cfg.val['fit_ph1_bound'])
    para.add('gauss', value=1.0, min=0.0, max=Cfg.val['fit_gauss_max_hz'])
    para.add('lorentz', value=1.0, min=0.0, max=Cfg.val['fit_lorentz_max_hz'])
    para.add('shift', value=0.0, min=-Cfg.val['fit_ref_shift_max_hz'], max=Cfg.val['fit_ref_shift_max_hz'])
    v, args, amps, base, r = _nonlinear_fit(model, para, False, options.max_nfev)
  except (NumericalFailure, ValueError) as e:
    return failed(f"reduced preliminary fit: {e}")
  state = advance(state, FitState.PRELIMINARY_REDUCED)
  prelim = _result(model, args, amps, base, r, state, ref_shift, ref_fwhm, conditions)
  progress('fit', f"reduced fit {reduced}: residual {prelim.residual_norm:.4g}")

  # Full preliminary fit
  try:
    model = LinearCombinationModel(spectra, bases, fit_range, options.knot_spacing)
    para = lmfit.Parameters()
    para.add('ph0', value=v['ph0'], min=v['ph0']-Cfg.val['fit_ph0_bound'], max=v['ph0']+Cfg.val['fit_ph0_bound'])
    para.add('ph1', value=v['ph1'], min=-Cfg.val['fit_ph1_bound'], max=Cfg.val['fit_ph1_bound'])
    para.add('gauss', value=v['gauss'], min=0.0, max=Cfg.val['fit_gauss_max_hz'])
    para.add('shift', value=v['shift'], vary=False)
    for k in range(model.nk):
      para.add(f'lorentz_{k}', value=v['lorentz'], min=0.0, max=Cfg.val['fit_lorentz_max_hz'])
      para.add(f'shift_{k}', value=0.0, min=-Cfg.val['fit_shift_max_hz'], max=Cfg.val['fit_shift_max_hz'])
    v, args, amps, base, r = _nonlinear_fit(model, para, True, options.max_nfev)
  except (NumericalFailure, ValueError) as e:
    return failed(f"full preliminary fit: {e}")
  state = advance(state, FitState.PRELIMINARY_FULL)
  state = advance(state, FitState.COMPLETE)
  result = _result(model, args, amps, base, r, state, ref_shift, ref_fwhm, conditions, prelim)
  progress('fit', f"full fit {[c.name for c in conditions]}: residual {result.residual_norm:.4g}")
  return result


def fit_spectrum(spectrum, basis, options=None, ref_shift=None, progress=silent):
  """Fit one processed spectrum.

  Parameters
  ----------
      spectrum (Spectrum): Processed spectrum
      basis (BasisSet): Basis set for the condition of spectrum
      options (Options, optional): Fit options. Defaults to Options.from_cfg()
      ref_shift (float, optional): Referencing shift (Hz) to use instead of measuring it
      progress (callable, optional): Progress observer (stage, message)

  Returns
  -------
      FitParameters: COMPLETE result or FAILED sentinel
  """
  if options is None:
    options = Options.from_cfg()
  condition = ConditionKind.A if spectrum.condition is None else spectrum.condition
  return _fit([spectrum], [prepare_basis(basis, options)], (condition,), options,
              ref_shift=ref_shift, progress=progress)


def fit_concatenated(spectra, bases, options=None, ref_shift=None, progress=silent):
  """Fit several conditions jointly with shared amplitudes and line shape parameters.

  Parameters
  ----------
      spectra (dict): ConditionKind -> Spectrum; the first entry is used for referencing
      bases (dict): ConditionKind -> BasisSet for every condition in spectra
      options (Options, optional): Fit options
      ref_shift (float, optional): Referencing shift (Hz) to use instead of measuring it
      progress (callable, optional): Progress observer (stage, message)

  Returns
  -------
      FitParameters: Joint result with one baseline per condition
  """
  if options is None:
    options = Options.from_cfg()
  conditions = tuple(spectra.keys())
  missing = [c.name for c in conditions if c not in bases]
  if missing:
    raise PreconditionError(f"No basis set for conditions {missing}")
  prepared = _union_names([prepare_basis(bases[c], options, normalise=False) for c in conditions])
  # One normalisation for all conditions, so amplitudes are comparable
  first = prepared[0].normalise()
  factor = first.scale / prepared[0].scale
  prepared = [first] + [b.scaled(1.0 / factor) for b in prepared[1:]]
  return _fit([spectra[c] for c in conditions], prepared, conditions, options,
              ref_shift=ref_shift, progress=progress)


def fit_water(spectrum, options=None, progress=silent):
  """Fit water reference or short-TE water data with a single water resonance."""
  if options is None:
    options = Options.from_cfg()
  condition = ConditionKind.REF if spectrum.condition is None else spectrum.condition
  return _fit([spectrum], [water_basis(spectrum)], (condition,), options, water=True,
              progress=progress)


def model_spectrum(spectrum, basis, params, options=None, water=False):
  """Data, model and baseline on the fit range for a (separately) fitted spectrum.

  Returns
  -------
      tuple: (ppm, data, model, baseline) real arrays
  """
  if options is None:
    options = Options.from_cfg()
  s = apply_reference(spectrum.zeropad(Cfg.val['fit_zeropad']), params.ref_shift)
  b = water_basis(spectrum) if water else prepare_basis(basis, options)
  b = b.resample(s)
  model = LinearCombinationModel([s], [b.subset(list(params.names))], params.fit_range,
                                 params.knot_spacing)
  cols = model.columns(params.ph0, params.ph1, params.gauss_lb, params.lorentz_lb, params.freq_shift)
  base = model.baseline @ params.baseline[0]
  return model.x, model.ys[0], cols[0] @ params.amplitudes + base, base
