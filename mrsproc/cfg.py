# mrsproc/cfg.py - MRSProc - config
#
# SPDX-FileCopyrightText: Copyright (C) 2021-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Configuration management module for MRSProc.

Configuration values are loaded from several sources with a fixed precedence:
- Default values defined in the code (`Cfg.val`)
- Root configuration file (cfg.json), written after the first run
- User configuration file (~/.config/mrsproc.json) that overrides both
- Environment variable MRSPROC_DEV for development flags

The processing defaults (fit ranges, baseline knot spacing, water removal
band and component counts, iteration caps, landmark windows) live here, so
that a site can change them once in its cfg.json.
"""

import json
import os
from math import hypot

import matplotlib.pyplot as plt


class Cfg:
  """Static run configuration; the class is used directly, never instantiated.

  Attributes
  ----------
      val (dict): Configuration values, defaults below
      dev_flags (set): Development flags from MRSPROC_DEV
      file (str): User configuration file
  """

  # Defaults; override them in cfg.json or the user file, not here
  val = {  # noqa: RUF012
    'path_root': None,        # MRSProc root path
    'path_data': None,        # Save path for simulated and loaded datasets
    'path_results': None,     # Save path for processing and fitting runs
    'figsize': (26.67,15.0),
    'fft_peak_location_estimator': 'jain' , # 'quadratic' or 'quinn2' or 'jain' or None
    'npfft_module': ['numpy','fft'], # ['pyfftw.interfaces','numpy_fft'] or
                                     # ['numpy','fft'] or ['scipy','fft'], etc.
    'num_eps': 1e-8,                 # numerical epsilon for float comparisons
    'default_screen_dpi': 96,
    'screen_dpi': None,
    'image_dpi': [300],
    # Receiver centre frequency (ppm) if not given by the data
    'centre_ppm': 4.68,
    # Alignment and averaging
    'align_package_fraction': 0.1,   # fraction of averages per cross-correlation package
    'align_max_iterations': 10,      # robust registration passes
    'align_tolerance_hz': 0.01,      # convergence on frequency updates between passes
    'align_time_window': 0.2,        # seconds of the FID used for registration
    'align_max_shift_hz': 20.0,      # cross-correlation search range
    'align_max_nfev': 200,           # per-transient nonlinear solve cap
    'drift_landmark_ppm': 3.027,     # Cr CH3 used for drift traces
    'drift_window': [2.9, 3.1],
    # Correction
    'ecc_check_vendors': ['philips'], # vendors using the ecc keep-or-discard check
    'ecc_check_window': [1.8, 2.2],
    'phase_cr_cho_vendors': ['siemens'], # unedited data phased on Cr/Cho (edited always)
    'water_band': [4.5, 4.9],        # residual water removal band (ppm)
    'water_components': 20,          # HSVD components (first attempt)
    'water_components_min': 1,       # retry floor; below that the stage fails
    'water_hankel_fraction': 0.75,   # Hankel matrix rows as fraction of the FID
    'dc_correct_percentage': 10,     # spectral edge percentage used for dc correction
    'polarity_window_unedited': [1.9, 2.1],
    'polarity_window_edited': [2.8, 3.2],
    'phase_cr_cho_min_fraction': 0.1, # Cr/Cho magnitude needed for phasing, relative to 1.8-3.4 ppm
    # Referencing
    'linewidth_prior_hz_per_t': 2.0, # expected linewidth per Tesla for peak fits
    'reference_max_nfev': 1000,
    'water_reference_window': [4.6, 4.8],
    'water_reference_zeropad': 16,
    # Fitting
    'fit_range': [0.2, 4.2],
    'fit_range_water': [2.0, 7.4],
    'fit_knot_spacing': 0.4,
    'fit_zeropad': 2,
    'fit_mm': True,
    'fit_max_nfev': 2000,
    'fit_ph0_bound': 180.0,          # degrees
    'fit_ph1_bound': 20.0,           # degrees/ppm
    'fit_gauss_max_hz': 25.0,
    'fit_lorentz_max_hz': 10.0,
    'fit_shift_max_hz': 5.0,         # per basis function
    'fit_ref_shift_max_hz': 20.0,    # global shift after referencing
    'fit_reduced_basis': ['Cr', 'Glu', 'Ins', 'GPC', 'PCh', 'Cho', 'NAA'],
    # Quality metrics
    'quality_noise_window': [-2.0, 0.0],
    'quality_zeropad': 4,
  }
  # Development flags, set via the environment variable MRSPROC_DEV (colon
  # separated list). Flags in use:
  # * align_trace - Report per-pass registration updates to the progress observer
  dev_flags = set()  # noqa: RUF012
  file = os.path.expanduser(os.path.join('~','.config','mrsproc.json'))
  # Folders below ROOT/data for paths the config files leave unset
  data_folders = {'path_data': 'datasets', 'path_results': 'results'}  # noqa: RUF012

  @staticmethod
  def init(bin_path):
    """Set up the configuration for a run from the mrsproc.py location.

    ROOT/cfg.json is read first, ~/.config/mrsproc.json last. The data
    folders are created and the plot defaults set. ROOT/cfg.json is then
    brought up to date: path entries and stale keys are dropped, new keys
    are added with their current value, and existing entries keep their
    stored value so user overrides are not copied into it.

    Parameters
    ----------
        bin_path (str): Path to the mrsproc.py script
    """
    Cfg.val['path_root'] = os.path.dirname(bin_path)
    root_file = os.path.join(Cfg.val['path_root'], 'cfg.json')
    stored = Cfg._load(root_file, strict=False)
    Cfg._load(Cfg.file, strict=True)
    for key, folder in Cfg.data_folders.items():
      if Cfg.val[key] is None:
        Cfg.val[key] = os.path.join(Cfg.val['path_root'], 'data', folder)
      os.makedirs(Cfg.val[key], exist_ok=True)
    if Cfg.val['screen_dpi'] is None:
      Cfg.val['screen_dpi'] = Cfg._screen_dpi()
    plt.rcParams['figure.figsize'] = Cfg.val['figsize']
    Cfg._sync_root(root_file, stored)
    Cfg.dev_flags.update(f for f in os.environ.get('MRSPROC_DEV', '').split(':') if f)

  @staticmethod
  def _load(filename, strict):
    # Copy known entries of a json file into Cfg.val; returns the file content
    if not os.path.isfile(filename):
      return {}
    with open(filename) as fp:
      js = json.load(fp)
    unknown = [k for k in js if k not in Cfg.val]
    if strict and unknown:
      raise RuntimeError(f"Unknown config file entry {unknown[0]} in {filename}")
    Cfg.val.update((k, v) for k, v in js.items() if k in Cfg.val)
    return js

  @staticmethod
  def _sync_root(filename, stored):
    keep = {k: v for k, v in stored.items() if k in Cfg.val and not k.startswith('path_')}
    for k, v in Cfg.val.items():
      if not k.startswith('path_'):
        keep.setdefault(k, v)
    if keep != stored:
      with open(filename, 'w') as fp:
        json.dump(keep, fp, indent=2, sort_keys=True)
        fp.write('\n')

  @staticmethod
  def dev(flag):
    """True if flag is listed in MRSPROC_DEV."""
    return flag in Cfg.dev_flags

  @staticmethod
  def _screen_dpi():
    """Monitor DPI from screeninfo, if installed and a monitor is found.

    Returns
    -------
        float: Screen DPI, or default_screen_dpi otherwise
    """
    try:
      from screeninfo import get_monitors
      m = get_monitors()[0]
      return hypot(m.width, m.height) / hypot(m.width_mm, m.height_mm) * 25.4
    except Exception:  # no screeninfo, no screen or no physical size reported
      return Cfg.val['default_screen_dpi']
