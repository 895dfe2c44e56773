# mrsproc/__init__.py - MRSProc - init package
#
# SPDX-FileCopyrightText: Copyright (C) 2020-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

"""MRSProc: Magnetic Resonance Spectroscopy processing and linear-combination fitting.

MRSProc turns multi-transient MRS time-domain signals into quantified
metabolite amplitudes:
- Coil combination, robust alignment and weighted averaging of transients
- Eddy-current correction, residual water removal and polarity correction
- Frequency and phase referencing to metabolite or water landmarks
- Edit sub-spectrum classification and combination (MEGA, HERMES, HERCULES)
- Staged linear-combination model fitting with spline baselines
- SNR, linewidth and drift quality metrics over batches of datasets
"""

__all__ = ["align", "basis", "cfg", "conditions", "correct", "errors", "fit",
           "molecules", "options", "pipeline", "progress", "protocol", "quality",
           "reference", "signal", "simulate", "spectrum", "store"]

version_info = (1,0,0)
__version__ = '.'.join(map(str, version_info))
