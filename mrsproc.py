#!/usr/bin/env python3
#
# mrsproc.py - MRSProc - command line MRSProc interface
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later
#
# See --help for arguments, uses sub-commands

"""MRSProc command-line interface.

Sub-commands to simulate datasets, process them, fit them against a basis
set and report on the quality of a stored run.
"""

import argparse
import glob
import os
import sys

import matplotlib.pyplot as plt

from mrsproc.cfg import Cfg


def main():
  """Parse arguments, setup basic environment and run - Main function of MRSProc."""
  parser = argparse.ArgumentParser(description='Magnetic Resonance Spectroscopy (MRS) processing and fitting',
                                   formatter_class=argparse.ArgumentDefaultsHelpFormatter)
  subparsers = parser.add_subparsers(title="Valid sub-commands")

  # Simulate datasets
  p_simulate = subparsers.add_parser('simulate', help='Generate synthetic datasets and basis set.',
                                     formatter_class=argparse.ArgumentDefaultsHelpFormatter)
  add_arguments_default(p_simulate)
  add_arguments_sequence(p_simulate)
  add_arguments_simulate(p_simulate)
  p_simulate.set_defaults(func=simulate)

  # Process datasets
  p_process = subparsers.add_parser('process', help='Process datasets.',
                                    formatter_class=argparse.ArgumentDefaultsHelpFormatter)
  add_arguments_default(p_process)
  add_arguments_sequence(p_process)
  add_arguments_process(p_process)
  p_process.set_defaults(func=process)

  # Process and fit datasets
  p_fit = subparsers.add_parser('fit', help='Process and fit datasets.',
                                formatter_class=argparse.ArgumentDefaultsHelpFormatter)
  add_arguments_default(p_fit)
  add_arguments_sequence(p_fit)
  add_arguments_process(p_fit)
  add_arguments_fit(p_fit)
  p_fit.set_defaults(func=fit)

  # Report on stored results
  p_report = subparsers.add_parser('report', help='Print quality report and amplitudes of a run.',
                                   formatter_class=argparse.ArgumentDefaultsHelpFormatter)
  add_arguments_default(p_report)
  p_report.add_argument('results', type=str, help='Run folder or results.joblib file.')
  p_report.set_defaults(func=report)

  args = parser.parse_args()
  if hasattr(args, "func"):
    args.func(args)
  else:
    print(f"{sys.argv[0]}: illegal sub-command or sub-command not specified, see help [-h]", file=sys.stderr)

def add_arguments_default(p):
  """Add default command-line arguments.

  Args:
      p (argparse.ArgumentParser): Parser to add arguments to
  """
  p.add_argument('-v', '--verbose', action='count', help='Increase output verbosity (0: none; 1: main text; 2: +main plots; 3: detailed text).', default=0)

def add_arguments_sequence(p):
  """Add acquisition command-line arguments.

  Args:
      p (argparse.ArgumentParser): Parser to add arguments to
  """
  p.add_argument('--sequence', type=lambda s : s.lower(), default='unedited',
                 choices=['unedited', 'mega', 'hermes', 'hercules'],
                 help='Acquisition sequence.')
  p.add_argument('--target', type=str, default='GABA',
                 help='MEGA editing target (GABA or GSH).')

def add_arguments_simulate(p):
  """Add simulation command-line arguments.

  Args:
      p (argparse.ArgumentParser): Parser to add arguments to
  """
  p.add_argument('-n', '--num', type=int, default=4, help='Number of datasets.')
  p.add_argument('--averages', type=int, default=32, help='Transients per sub-spectrum.')
  p.add_argument('--coils', type=int, default=4, help='Receive coils.')
  p.add_argument('--samples', type=lambda v : (abs(int(v))//2)*2, default=2048,
                 help='Time samples (even, positive integer).')
  p.add_argument('--sample_rate', type=float, default=2000.0, help='Sample rate in Hz.')
  p.add_argument('--omega', type=float, default=123.2, help='Scanner frequency in MHz.')
  p.add_argument('--linewidth', type=float, default=4.0, help='Lorentzian linewidth in Hz.')
  p.add_argument('--noise', type=float, default=2.0, help='Noise standard deviation per transient.')
  p.add_argument('--drift', type=float, default=3.0, help='Linear frequency drift over the scan in Hz.')
  p.add_argument('--jitter', type=float, default=0.5, help='Random frequency jitter in Hz.')
  p.add_argument('--water', type=float, default=50.0, help='Residual water amplitude.')
  p.add_argument('--ecc', type=float, default=0.0, help='Eddy-current phase amplitude (rad).')
  p.add_argument('--seed', type=int, default=None, help='Random seed.')

def add_arguments_process(p):
  """Add processing command-line arguments.

  Args:
      p (argparse.ArgumentParser): Parser to add arguments to
  """
  p.add_argument('datasets', type=str, nargs='+',
                 help='Dataset folders (metab.json, optional ref.json, water.json, mm.json).')
  p.add_argument('--vendor', type=lambda s : s.lower(), default='siemens',
                 choices=['siemens', 'ge', 'philips'], help='Scanner manufacturer.')
  p.add_argument('--water_components', type=int, default=Cfg.val['water_components'],
                 help='HSVD components for residual water removal (first attempt).')
  p.add_argument('-j', '--jobs', type=int, default=1, help='Parallel worker threads.')

def add_arguments_fit(p):
  """Add fitting command-line arguments.

  Args:
      p (argparse.ArgumentParser): Parser to add arguments to
  """
  p.add_argument('--basis', type=str, required=True, help='Basis set json file.')
  p.add_argument('--fit_style', type=str, default='separate', choices=['separate', 'concatenated'],
                 help='Fit difference and sum spectra separately or jointly.')
  p.add_argument('--fit_range', type=float, nargs=2, default=Cfg.val['fit_range'],
                 help='Fit range in ppm.')
  p.add_argument('--knot_spacing', type=float, default=Cfg.val['fit_knot_spacing'],
                 help='Baseline knot spacing in ppm.')
  p.add_argument('--include', type=str, nargs='+', default=None,
                 help='Basis functions to fit (default all).')
  p.add_argument('--no_mm', action='store_true', help='Do not add macromolecule and lipid basis functions.')

def _options(args):
  from mrsproc.options import Options
  kw = {
    'sequence': args.sequence,
    'edit_target': args.target if args.sequence == 'mega' else 'none',
    'vendor': args.vendor,
    'water_components': args.water_components
  }
  if hasattr(args, 'fit_style'):
    kw.update({
      'fit_style': args.fit_style,
      'fit_range': tuple(args.fit_range),
      'knot_spacing': args.knot_spacing,
      'include': None if args.include is None else tuple(args.include),
      'fit_mm': not args.no_mm
    })
  return Options.from_cfg(**kw)

def simulate(args):
  """Generate synthetic datasets and their basis set.

  Args:
      args: Parsed command-line arguments
  """
  import numpy as np

  import mrsproc.simulate as sim
  from mrsproc.store import get_folder, save_basis, save_dataset
  name = f"{args.sequence}" + (f"-{args.target}" if args.sequence == 'mega' else "")
  folder = get_folder(os.path.join(Cfg.val['path_data'], name), "sim-%s")
  rng = np.random.default_rng(args.seed)
  if args.verbose > 0:
    print(f"# Simulating {args.num} {name} datasets in {folder}")
  for k in range(args.num):
    roles = list(sim.ROLES[args.sequence].keys())
    order = [roles[i] for i in rng.permutation(len(roles))]
    ds = sim.synthetic_dataset(args.sequence, args.target, seed=int(rng.integers(2**31)),
                               id=f"ds-{k+1}", averages=args.averages, coils=args.coils,
                               npts=args.samples, dwelltime=1.0/args.sample_rate,
                               txfrq=args.omega, lorentz_hz=args.linewidth, noise=args.noise,
                               drift_hz=args.drift, freq_jitter_hz=args.jitter, water=args.water,
                               ecc_rad=args.ecc, order=order)
    save_dataset(ds, os.path.join(folder, ds.id))
    if args.verbose > 2:
      print(f"# Saved {ds.id} with sub-spectrum order {[r.name for r in order]}")
  bases = sim.edited_bases(args.sequence, args.target, npts=args.samples,
                           dwelltime=1.0/args.sample_rate, txfrq=args.omega)
  save_basis(bases[sim.ConditionKind.A] if args.sequence == 'unedited' else bases,
             os.path.join(folder, 'basis.json'))
  if args.verbose > 0:
    print(f"# Basis set saved as {os.path.join(folder, 'basis.json')}")

def _run(args, basis):
  from mrsproc.pipeline import run_batch
  from mrsproc.progress import ProgressBar
  from mrsproc.store import get_folder, load_dataset, save_results
  options = _options(args)
  datasets = [load_dataset(f) for f in args.datasets]
  bar = ProgressBar(len(datasets), verbose=args.verbose)
  try:
    result = run_batch(datasets, basis=basis, options=options, n_jobs=args.jobs, progress=bar)
  finally:
    bar.close()
  folder = get_folder(Cfg.val['path_results'], "run-%s")
  fn = save_results({'options': options, 'items': result.items, 'report': result.report}, folder)
  if args.verbose > 0:
    for line in result.report.lines():
      print(f"# {line}")
    print(f"# Results saved as {fn}")
  if args.verbose > 1:
    _plot(result, folder, show=True)
  return result

def _plot(result, folder, show=False):
  for f in glob.glob(os.path.join(folder, "spectra-*@*.png")):
    os.remove(f)
  for it in result.items:
    if it.result is None:
      continue
    fig, ax = plt.subplots(1, 1, dpi=Cfg.val['screen_dpi'])
    for k, s in it.result.spectra.items():
      if not k.is_water:
        s.plot(ax, mode='real', label=k.name)
    ax.legend()
    plt.title(f"{it.id}")
    for dpi in Cfg.val['image_dpi']:
      plt.savefig(os.path.join(folder, f"spectra-{it.index}@{dpi}.png"), dpi=dpi)
    if show:
      plt.show(block=True)
    plt.close()

def process(args):
  """Process datasets and store the results.

  Args:
      args: Parsed command-line arguments
  """
  _run(args, None)

def fit(args):
  """Process and fit datasets and store the results.

  Args:
      args: Parsed command-line arguments
  """
  from mrsproc.store import load_basis
  _run(args, load_basis(args.basis))

def report(args):
  """Print the quality report and fitted amplitudes of a stored run.

  Args:
      args: Parsed command-line arguments
  """
  from mrsproc.store import load_results
  fn = args.results
  if os.path.isdir(fn):
    fn = os.path.join(fn, 'results.joblib')
  res = load_results(fn)
  for line in res['report'].lines():
    print(line)
  for it in res['items']:
    if it.fits is None:
      continue
    for k, p in it.fits.items():
      if p.ok:
        amps = ", ".join(f"{n} {a:.3f}" for n, a in zip(p.names, p.amplitudes, strict=True))
        print(f"{it.id} {k.name}: {amps}")
      else:
        print(f"{it.id} {k.name}: failed, {p.message}")

if __name__ == '__main__':
  # Find base folder
  if not os.name == 'posix':
    print("**WARNING - MRSProc only runs reliably and is only supported on Linux/POSIX**")
  bin_path = os.path.realpath(__file__)
  if not os.path.isfile(bin_path):
    raise RuntimeError("Cannot find location of mrsproc.py root folder")
  Cfg.init(bin_path)
  # Headless mode
  if "DISPLAY" not in os.environ:
    from matplotlib import use
    use("Agg")
  main()
