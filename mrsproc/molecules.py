# mrsproc/molecules.py - MRSProc - metabolites
#
# SPDX-FileCopyrightText: Copyright (C) 2019 Max Chandler, PhD student at Cardiff University
# SPDX-FileCopyrightText: Copyright (C) 2020-2025 Frank C Langbein <frank@langbein.org>, Cardiff University
# SPDX-License-Identifier: AGPL-3.0-or-later

# Landmark chemical shifts (ppm)
NAA_PPM = 2.008
CR_PPM = 3.027
CHO_PPM = 3.185
WATER_PPM = 4.68                  # Temperature dependant, reference only to water data
MM09_PPM = 0.915

GYROMAGNETIC_RATIO = 42.577478518 # 1H (MHz/T) : https://physics.nist.gov/cgi-bin/cuu/Value?gammapbar

# Singlet approximation of the main resonances: (ppm, protons). Used for
# synthetic basis sets and landmark reference spectra; J-coupling is ignored.
PEAKS = {
  'Asc': [(3.73, 2), (4.49, 1)],
  'Asp': [(2.65, 1), (2.80, 1), (3.89, 1)],
  'Cr': [(3.027, 3), (3.913, 2)],
  'PCr': [(3.029, 3), (3.930, 2)],
  'GABA': [(1.89, 2), (2.28, 2), (3.01, 2)],
  'Gln': [(2.12, 2), (2.44, 2), (3.75, 1)],
  'Glu': [(2.08, 2), (2.34, 2), (3.74, 1)],
  'GSH': [(2.55, 2), (2.95, 2), (3.77, 1), (4.56, 1)],
  'GPC': [(3.212, 9), (3.61, 2), (4.31, 2)],
  'PCh': [(3.208, 9), (3.64, 2), (4.28, 2)],
  'Cho': [(3.185, 9)],
  'Ins': [(3.27, 1), (3.52, 2), (3.61, 2), (4.05, 1)],
  'Lac': [(1.31, 3), (4.10, 1)],
  'NAA': [(2.008, 3), (2.49, 1), (2.67, 1), (4.38, 1)],
  'NAAG': [(2.04, 3), (2.18, 2), (2.72, 1)],
  'Scyllo': [(3.34, 6)],
  'Tau': [(3.25, 2), (3.42, 2)],
  'H2O': [(4.68, 2)]
}
