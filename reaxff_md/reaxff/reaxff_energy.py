"""
Contains energy related functions for ReaxFF

All terms share two intermediates computed once per evaluation pass: the
taper polynomial that smoothly switches off nonbonded interactions and the
corrected bond orders. Every term is available per atom tuple
(`bond_energy(i, j, ...)`) and summed over the whole snapshot
(`calculate_covbon_pot(...)`); both go through the same elementwise formulas.
"""
from typing import Dict, Optional, Sequence

import numpy as onp
import jax.numpy as jnp
from absl import logging

from reaxff_md import dataclasses, util
from reaxff_md.util import high_precision_sum
from reaxff_md.reaxff.reaxff_forcefield import (ForceField,
                                                ParameterLookupError,
                                                PreconditionError)
from reaxff_md.reaxff.reaxff_interactions import (Atoms, validate_atoms,
                                                  calculate_angle,
                                                  calculate_distances,
                                                  calculate_valence_angles)

Array = util.Array

c1c = 332.0638  # Coulomb energy conversion, kcal/mol * Angstrom / e^2
eem_c1c = 14.4  # Coulomb energy conversion, eV * Angstrom / e^2
ev_to_kcal = 23.02
rdndgr = 180.0/onp.pi
dgrrdn = 1.0/rdndgr

DEFAULT_TERMS = ('E_covalent', 'E_lone_pair', 'E_over_under', 'E_valency',
                 'E_valency_penalty', 'E_valency_conj', 'E_vdw', 'E_coulomb')
ALL_TERMS = DEFAULT_TERMS + ('E_charge',)
_BONDED_TERMS = ('E_covalent', 'E_lone_pair', 'E_over_under', 'E_valency',
                 'E_valency_penalty', 'E_valency_conj')


# Taper


@dataclasses.dataclass
class Taper(object):
  """Coefficients of the 7th order taper polynomial, lowest order first."""
  coefficients: Array
  low_tap_rad: float = dataclasses.static_field()
  up_tap_rad: float = dataclasses.static_field()


def taper_coefficients(up_tap_rad: float, low_tap_rad: float = 0.0) -> Taper:
  '''
  Coefficients of the decreasing taper polynomial, 1 at low_tap_rad and 0
  at up_tap_rad. With low_tap_rad = 0 this is
  Tap(r) = 20x^7 - 70x^6 + 84x^5 - 35x^4 + 1 with x = r / up_tap_rad.
  '''
  if not up_tap_rad > low_tap_rad:
    raise PreconditionError(
        f'The taper radius must exceed {low_tap_rad}, got {up_tap_rad}.')
  SWA = float(low_tap_rad)
  SWB = float(up_tap_rad)
  D7 = (SWB - SWA) ** 7
  SWA2 = SWA * SWA
  SWA3 = SWA2 * SWA
  SWB2 = SWB * SWB
  SWB3 = SWB2 * SWB

  SWC7 = 20.0
  SWC6 = -70.0 * (SWA + SWB)
  SWC5 = 84.0 * (SWA2 + 3.0 * SWA * SWB + SWB2)
  SWC4 = -35.0 * (SWA3 + 9.0 * SWA2 * SWB + 9.0 * SWA * SWB2 + SWB3)
  SWC3 = 140.0 * (SWA3 * SWB + 3.0 * SWA2 * SWB2 + SWA * SWB3)
  SWC2 = -210.0 * (SWA3 * SWB2 + SWA2 * SWB3)
  SWC1 = 140.0 * SWA3 * SWB3
  SWC0 = (-35.0 * SWA3 * SWB2 * SWB2 + 21.0 * SWA2 * SWB3 * SWB2
          - 7.0 * SWA * SWB3 * SWB3 + SWB3 * SWB3 * SWB)
  coefficients = onp.array([SWC0, SWC1, SWC2, SWC3, SWC4, SWC5, SWC6, SWC7])
  return Taper(coefficients=coefficients / D7,
               low_tap_rad=SWA,
               up_tap_rad=SWB)


def taper(dist: Array, tap: Taper) -> Array:
  '''
  Evaluates the taper polynomial; 1 below low_tap_rad, 0 from up_tap_rad on.
  '''
  dist = jnp.asarray(dist)
  c = jnp.asarray(tap.coefficients, dtype=util.float_dtype(dist))
  value = c[7]
  for n in range(6, -1, -1):
    value = value * dist + c[n]
  value = jnp.where(dist < tap.low_tap_rad, 1.0, value)
  return jnp.where(dist < tap.up_tap_rad, value, 0.0)


def force_field_taper(force_field: ForceField) -> Taper:
  """Taper for nonbonded terms; the cutoff is the `swb` general parameter."""
  return taper_coefficients(force_field.global_params.swb)


# Parameter gathering


def _dtype(atoms: Atoms):
  return util.float_dtype(atoms.positions)


def _atom_param(force_field, name, species, dtype):
  return jnp.asarray(force_field.atom_array(name), dtype=dtype)[species]


def _pair_param(force_field, name, species, dtype):
  table = jnp.asarray(force_field.pair_array(name), dtype=dtype)
  return table[species.reshape(-1, 1), species.reshape(1, -1)]


def _angle_param(force_field, name, species, dtype):
  table = jnp.asarray(force_field.angle_array(name), dtype=dtype)
  return table[species.reshape(-1, 1, 1),
               species.reshape(1, -1, 1),
               species.reshape(1, 1, -1)]


def _check_indices(num_atoms, *indices):
  for index in indices:
    if not 0 <= index < num_atoms:
      raise ValueError(f'Atom index {index} is out of range for {num_atoms} '
                       'atoms.')
  if len(set(indices)) != len(indices):
    raise ValueError(f'Atom indices {indices} must be distinct.')


def _positions(atoms: Atoms) -> Array:
  return jnp.asarray(atoms.positions, dtype=_dtype(atoms))


def _charges(atoms: Atoms) -> Array:
  if atoms.charges is None:
    raise PreconditionError('Coulomb and charge energies need partial '
                            'charges; none were supplied.')
  charges = onp.asarray(atoms.charges)
  if charges.shape != (atoms.positions.shape[0],):
    raise PreconditionError(f'Expected {atoms.positions.shape[0]} charges, '
                            f'got shape {charges.shape}.')
  if not onp.all(onp.isfinite(charges)):
    raise PreconditionError('Partial charges must be finite.')
  return jnp.asarray(atoms.charges, dtype=_dtype(atoms))


# Bond orders


@dataclasses.dataclass
class BondOrders(object):
  """Bond orders of one geometry.

  Matrices are [N, N] and symmetric with zero diagonal. `bo_uncorrected`,
  `bopi_uncorrected` and `bopi2_uncorrected` are the raw bond orders with the
  bond order cutoff removed; `bo`, `bopi`, `bopi2` and `bosia` (the sigma
  part) are corrected for over coordination. `abo` is the total corrected bond
  order of each atom, `deltap` and `deltap_boc` the deviations of the raw
  total from the valency and from the bond order correction valency.
  `positions` and `species` record the geometry they were computed for.
  """
  positions: Array
  species: Array
  distances: Array
  bo_uncorrected: Array
  bopi_uncorrected: Array
  bopi2_uncorrected: Array
  bo: Array
  bopi: Array
  bopi2: Array
  bosia: Array
  abo: Array
  deltap: Array
  deltap_boc: Array


def calculate_bond_orders(atoms: Atoms,
                          force_field: ForceField) -> BondOrders:
  '''
  Computes uncorrected and corrected bond orders for every pair of atoms.

  Pairs without an explicit bond row in the force field have zero bond
  order. Each component is only present when both atom types define the
  corresponding covalent radius.
  '''
  species = validate_atoms(atoms, force_field)
  positions = _positions(atoms)
  dtype = positions.dtype
  N = positions.shape[0]
  cutoff = force_field.global_params.cutoff

  dists = calculate_distances(positions)
  pair_mask = ((~jnp.eye(N, dtype=bool))
               & (_pair_param(force_field, 'explicit', species, dtype) > 0))

  my_rob1 = _pair_param(force_field, 'r_sigma', species, dtype)
  my_rob2 = _pair_param(force_field, 'r_pi', species, dtype)
  my_rob3 = _pair_param(force_field, 'r_pipi', species, dtype)
  my_bop1 = _pair_param(force_field, 'p_bo1', species, dtype)
  my_bop2 = _pair_param(force_field, 'p_bo2', species, dtype)
  my_pdp = _pair_param(force_field, 'p_bo3', species, dtype)
  my_ptp = _pair_param(force_field, 'p_bo4', species, dtype)
  my_pdo = _pair_param(force_field, 'p_bo5', species, dtype)
  my_popi = _pair_param(force_field, 'p_bo6', species, dtype)

  mask1 = (my_rob1 > 0) & pair_mask
  mask2 = (my_rob2 > 0) & pair_mask
  mask3 = (my_rob3 > 0) & pair_mask

  rhulp = jnp.where(mask1, dists / jnp.where(mask1, my_rob1, 1.0), 1.0)
  rhulp2 = jnp.where(mask2, dists / jnp.where(mask2, my_rob2, 1.0), 1.0)
  rhulp3 = jnp.where(mask3, dists / jnp.where(mask3, my_rob3, 1.0), 1.0)

  ehulp = (1.0 + cutoff) * jnp.exp(my_bop1 * rhulp ** my_bop2)
  ehulpp = jnp.exp(my_pdp * rhulp2 ** my_ptp)
  ehulppp = jnp.exp(my_pdo * rhulp3 ** my_popi)

  ehulp = jnp.where(mask1, ehulp, 0.0)
  ehulpp = jnp.where(mask2, ehulpp, 0.0)
  ehulppp = jnp.where(mask3, ehulppp, 0.0)

  bor = ehulp + ehulpp + ehulppp
  bo = bor - cutoff
  bonded = bo > 0
  bo = jnp.where(bonded, bo, 0.0)
  bopi = jnp.where(bonded, ehulpp, 0.0)
  bopi2 = jnp.where(bonded, ehulppp, 0.0)
  abo = jnp.sum(bo, axis=1)

  aval = _atom_param(force_field, 'valency', species, dtype)
  amas = _atom_param(force_field, 'mass', species, dtype)
  # light atoms use the angle valency in the bond order correction
  vval3 = jnp.where(amas < 21.0,
                    _atom_param(force_field, 'valency_boc', species, dtype),
                    _atom_param(force_field, 'valency_val', species, dtype))
  deltap = abo - aval
  deltap_boc = abo - vval3

  bo_c, bopi_c, bopi2_c = calculate_boncor_pot(species, pair_mask, bo, bopi,
                                               bopi2, deltap, deltap_boc,
                                               force_field)
  bosia = jnp.clip(bo_c - bopi_c - bopi2_c, 0, None)

  return BondOrders(positions=positions,
                    species=species,
                    distances=dists,
                    bo_uncorrected=bo,
                    bopi_uncorrected=bopi,
                    bopi2_uncorrected=bopi2,
                    bo=bo_c,
                    bopi=bopi_c,
                    bopi2=bopi2_c,
                    bosia=bosia,
                    abo=jnp.sum(bo_c, axis=1),
                    deltap=deltap,
                    deltap_boc=deltap_boc)


def calculate_boncor_pot(species: Array,
                         pair_mask: Array,
                         bo: Array,
                         bopi: Array,
                         bopi2: Array,
                         deltap: Array,
                         deltap_boc: Array,
                         force_field: ForceField):
  '''
  Over coordination correction of the raw bond orders.
  The f1 factor is applied where the pair's ovc exceeds 0.001, the f4 * f5
  factors where its v13cor does.
  '''
  dtype = bo.dtype
  gp = force_field.global_params
  aval = _atom_param(force_field, 'valency', species, dtype)
  aval_j1 = aval.reshape(-1, 1)
  aval_j2 = aval.reshape(1, -1)
  ov_j1 = deltap.reshape(-1, 1)
  ov_j2 = deltap.reshape(1, -1)

  exp11 = jnp.exp(-gp.p_boc1 * ov_j1)
  exp21 = jnp.exp(-gp.p_boc1 * ov_j2)
  exphu1 = jnp.exp(-gp.p_boc2 * ov_j1)
  exphu2 = jnp.exp(-gp.p_boc2 * ov_j2)
  exphu12 = (exphu1 + exphu2)

  ovcor = -(1.0 / gp.p_boc2) * jnp.log(0.50 * exphu12)
  huli = aval_j1 + exp11 + exp21
  hulj = aval_j2 + exp11 + exp21

  corr1 = huli / (huli + ovcor)
  corr2 = hulj / (hulj + ovcor)
  corrtot = 0.50 * (corr1 + corr2)

  my_ovc = _pair_param(force_field, 'ovc', species, dtype)
  corrtot = jnp.where(my_ovc > 0.001, corrtot, 1.0)

  vp131 = _pair_param(force_field, 'p_boc4', species, dtype)
  vp132 = _pair_param(force_field, 'p_boc3', species, dtype)
  vp133 = _pair_param(force_field, 'p_boc5', species, dtype)
  ov_j11 = deltap_boc.reshape(-1, 1)
  ov_j22 = deltap_boc.reshape(1, -1)
  cor1 = vp131 * bo * bo - ov_j11
  cor2 = vp131 * bo * bo - ov_j22

  exphu3 = jnp.exp(-vp132 * cor1 + vp133)
  exphu4 = jnp.exp(-vp132 * cor2 + vp133)
  bocor1 = 1.0 / (1.0 + exphu3)
  bocor2 = 1.0 / (1.0 + exphu4)

  my_v13cor = _pair_param(force_field, 'v13cor', species, dtype)
  bocor1 = jnp.where(my_v13cor > 0.001, bocor1, 1.0)
  bocor2 = jnp.where(my_v13cor > 0.001, bocor2, 1.0)

  bo = bo * corrtot * bocor1 * bocor2
  corrtot2 = corrtot * corrtot
  bopi = bopi * corrtot2 * bocor1 * bocor2
  bopi2 = bopi2 * corrtot2 * bocor1 * bocor2

  bo = jnp.where(pair_mask & (bo > 0), bo, 0.0)
  bopi = jnp.where(pair_mask & (bopi > 0), bopi, 0.0)
  bopi2 = jnp.where(pair_mask & (bopi2 > 0), bopi2, 0.0)
  return bo, bopi, bopi2


def _bond_orders_for(atoms: Atoms,
                     force_field: ForceField,
                     bond_orders: Optional[BondOrders]) -> BondOrders:
  """Returns `bond_orders` after checking they belong to `atoms`."""
  if bond_orders is None:
    return calculate_bond_orders(atoms, force_field)
  positions = onp.asarray(atoms.positions)
  species = onp.asarray(atoms.species)
  if (positions.shape != bond_orders.positions.shape
      or not onp.array_equal(positions, onp.asarray(bond_orders.positions))
      or not onp.array_equal(species, onp.asarray(bond_orders.species))):
    raise PreconditionError('The bond orders were computed for a different '
                            'geometry; recompute them for this snapshot.')
  return bond_orders


# Nonbonded terms


def _vdw_pot(dists, tapered, p_vdw1, gamma_w, r_vdw, d_ij, alpha):
  gamwh = jnp.where(gamma_w > 0, 1.0 / jnp.where(gamma_w > 0, gamma_w, 1.0),
                    0.0)
  hulpw = dists ** p_vdw1 + gamwh ** p_vdw1
  rrw = hulpw ** (1.0 / p_vdw1)
  h1 = jnp.exp(alpha * (1.0 - rrw / r_vdw))
  h2 = jnp.exp(0.5 * alpha * (1.0 - rrw / r_vdw))
  return tapered * d_ij * (h1 - 2.0 * h2)


def _coulomb_pot(dists, tapered, q_i, q_j, gamma):
  hulp2 = (dists ** 3 + gamma) ** (1.0 / 3.0)
  return c1c * q_i * q_j * tapered / hulp2


def calculate_vdw_pot(atoms: Atoms,
                      force_field: ForceField,
                      tap: Optional[Taper] = None) -> Array:
  '''
  van der Waals energy summed over all pairs (shielded Morse form).
  '''
  species = validate_atoms(atoms, force_field)
  if tap is None:
    tap = force_field_taper(force_field)
  positions = _positions(atoms)
  dtype = positions.dtype
  N = positions.shape[0]
  dists = calculate_distances(positions)
  # the diagonal is masked below; keep it away from zero for the powers
  mask = ~jnp.eye(N, dtype=bool)
  safe_dists = jnp.where(mask, dists, 1.0)
  evdw = _vdw_pot(safe_dists, taper(safe_dists, tap),
                  force_field.global_params.p_vdw1,
                  _pair_param(force_field, 'gamma_w', species, dtype),
                  _pair_param(force_field, 'r_vdw', species, dtype),
                  _pair_param(force_field, 'd_ij', species, dtype),
                  _pair_param(force_field, 'alpha', species, dtype))
  evdw = jnp.where(mask, evdw, 0.0)
  return high_precision_sum(evdw) / 2.0


def van_der_waals_interaction(i: int,
                              j: int,
                              atoms: Atoms,
                              force_field: ForceField,
                              tap: Optional[Taper] = None) -> Array:
  """van der Waals energy of the pair (i, j)."""
  species = validate_atoms(atoms, force_field)
  _check_indices(atoms.positions.shape[0], i, j)
  if tap is None:
    tap = force_field_taper(force_field)
  positions = _positions(atoms)
  bond = force_field.bond(int(species[i]), int(species[j]))
  dist = jnp.linalg.norm(positions[i] - positions[j])
  return _vdw_pot(dist, taper(dist, tap),
                  force_field.global_params.p_vdw1,
                  bond.gamma_w, bond.r_vdw, bond.d_ij, bond.alpha)


def calculate_coulomb_pot(atoms: Atoms,
                          force_field: ForceField,
                          tap: Optional[Taper] = None) -> Array:
  '''
  Shielded Coulomb energy summed over all pairs.
  '''
  species = validate_atoms(atoms, force_field)
  charges = _charges(atoms)
  if tap is None:
    tap = force_field_taper(force_field)
  positions = _positions(atoms)
  dtype = positions.dtype
  N = positions.shape[0]
  dists = calculate_distances(positions)
  mask = ~jnp.eye(N, dtype=bool)
  gamma = _pair_param(force_field, 'gamma', species, dtype)
  eph = _coulomb_pot(dists, taper(dists, tap), charges.reshape(-1, 1),
                     charges.reshape(1, -1), jnp.where(mask, gamma, 1.0))
  eph = jnp.where(mask, eph, 0.0)
  return high_precision_sum(eph) / 2.0


def coulomb_interaction(i: int,
                        j: int,
                        atoms: Atoms,
                        force_field: ForceField,
                        tap: Optional[Taper] = None) -> Array:
  """Coulomb energy of the pair (i, j); needs `atoms.charges`."""
  species = validate_atoms(atoms, force_field)
  _check_indices(atoms.positions.shape[0], i, j)
  charges = _charges(atoms)
  if tap is None:
    tap = force_field_taper(force_field)
  positions = _positions(atoms)
  bond = force_field.bond(int(species[i]), int(species[j]))
  dist = jnp.linalg.norm(positions[i] - positions[j])
  return _coulomb_pot(dist, taper(dist, tap), charges[i], charges[j],
                      bond.gamma)


def calculate_eem_charges(atoms: Atoms,
                          force_field: ForceField,
                          total_charge: float = 0.0,
                          tap: Optional[Taper] = None) -> Array:
  '''
  EEM charge solver
  Equalizes electronegativity with a dense direct solve of the bordered
  system. Returns an array of shape [N,] whose sum is total_charge.
  '''
  species = validate_atoms(atoms, force_field)
  if tap is None:
    tap = force_field_taper(force_field)
  positions = _positions(atoms)
  dtype = positions.dtype
  N = positions.shape[0]
  dists = calculate_distances(positions)
  mask = ~jnp.eye(N, dtype=bool)
  gamma = _pair_param(force_field, 'gamma', species, dtype)
  hulp2 = (dists ** 3 + jnp.where(mask, gamma, 1.0)) ** (1.0 / 3.0)
  A = jnp.where(mask, taper(dists, tap) * eem_c1c / hulp2, 0.0)
  my_idemp = _atom_param(force_field, 'eta_eem', species, dtype)
  my_elect = _atom_param(force_field, 'chi_eem', species, dtype)
  A = A + jnp.diag(2.0 * my_idemp)

  matrix = jnp.zeros((N + 1, N + 1), dtype=dtype)
  matrix = matrix.at[:N, :N].set(A)
  matrix = matrix.at[N, :N].set(1.0)
  matrix = matrix.at[:N, N].set(1.0)
  b = jnp.zeros((N + 1,), dtype=dtype)
  b = b.at[:N].set(-my_elect)
  b = b.at[N].set(total_charge)
  solution = jnp.linalg.solve(matrix, b)
  return solution[:N]


def calculate_charge_energy(atoms: Atoms, force_field: ForceField) -> Array:
  '''
  Self energy of the partial charges.
  '''
  species = validate_atoms(atoms, force_field)
  charges = _charges(atoms)
  dtype = charges.dtype
  chi = _atom_param(force_field, 'chi_eem', species, dtype)
  eta = _atom_param(force_field, 'eta_eem', species, dtype)
  return high_precision_sum(ev_to_kcal * (chi * charges
                                          + eta * jnp.square(charges)))


# Bonded two-body and one-body terms


def _covbon_pot(bo, bopi, bopi2, bosia, de_sigma, de_pi, de_pipi, p_be1,
                p_be2):
  bopo1 = jnp.where(bosia > 0, (jnp.where(bosia > 0, bosia, 1.0)) ** p_be2,
                    0.0)
  exphu1 = jnp.exp(p_be1 * (1.0 - bopo1))
  ebh = -de_sigma * bosia * exphu1 - de_pi * bopi - de_pipi * bopi2
  return jnp.where(bo <= 0, 0.0, ebh)


def _triple_bond_stabilization(bo, abo_j1, abo_j2, aval_j1, aval_j2, gp):
  # Stabilisation terminal triple bond in CO
  ba = (bo - 2.5) * (bo - 2.5)
  exphu = jnp.exp(-gp.p_trip2 * ba)
  obo_a = abo_j1 - bo
  obo_b = abo_j2 - bo
  exphua1 = jnp.exp(-gp.p_trip4 * obo_a)
  exphub1 = jnp.exp(-gp.p_trip4 * obo_b)
  ovoab = abo_j1 + abo_j2 - aval_j1 - aval_j2
  exphuov = jnp.exp(gp.p_trip3 * ovoab)
  hulpov = 1.0 / (1.0 + 25.0 * exphuov)
  estriph = gp.p_trip1 * exphu * hulpov * (exphua1 + exphub1)
  return jnp.where(bo < 1.0, 0.0, estriph)


def _carbon_oxygen_types(force_field: ForceField):
  names = [a.name.upper() for a in force_field.atom_types]
  return (onp.array([n == 'C' for n in names]),
          onp.array([n == 'O' for n in names]))


def _covbon_matrix(bond_orders: BondOrders, force_field: ForceField):
  species = bond_orders.species
  dtype = bond_orders.bo.dtype
  abo = bond_orders.abo
  aval = _atom_param(force_field, 'valency', species, dtype)
  eb = _covbon_pot(bond_orders.bo, bond_orders.bopi, bond_orders.bopi2,
                   bond_orders.bosia,
                   _pair_param(force_field, 'de_sigma', species, dtype),
                   _pair_param(force_field, 'de_pi', species, dtype),
                   _pair_param(force_field, 'de_pipi', species, dtype),
                   _pair_param(force_field, 'p_be1', species, dtype),
                   _pair_param(force_field, 'p_be2', species, dtype))
  is_c, is_o = _carbon_oxygen_types(force_field)
  is_c = jnp.asarray(is_c)[species]
  is_o = jnp.asarray(is_o)[species]
  triple_bond = ((is_c.reshape(-1, 1) & is_o.reshape(1, -1))
                 | (is_o.reshape(-1, 1) & is_c.reshape(1, -1)))
  estriph = _triple_bond_stabilization(bond_orders.bo,
                                       abo.reshape(-1, 1), abo.reshape(1, -1),
                                       aval.reshape(-1, 1),
                                       aval.reshape(1, -1),
                                       force_field.global_params)
  eb = eb + jnp.where(triple_bond, estriph, 0.0)
  return jnp.where(bond_orders.bo > 0, eb, 0.0)


def calculate_covbon_pot(atoms: Atoms,
                         force_field: ForceField,
                         bond_orders: Optional[BondOrders] = None) -> Array:
  '''
  Covalent bond energy summed over all bonded pairs, including the
  stabilisation of terminal C-O triple bonds.
  '''
  bond_orders = _bond_orders_for(atoms, force_field, bond_orders)
  return high_precision_sum(_covbon_matrix(bond_orders, force_field)) / 2.0


def bond_energy(i: int,
                j: int,
                atoms: Atoms,
                force_field: ForceField,
                bond_orders: Optional[BondOrders] = None) -> Array:
  """Covalent bond energy of the pair (i, j)."""
  bond_orders = _bond_orders_for(atoms, force_field, bond_orders)
  _check_indices(atoms.positions.shape[0], i, j)
  return _covbon_matrix(bond_orders, force_field)[i, j]


def _lonpar_terms(species, abo, force_field):
  dtype = abo.dtype
  gp = force_field.global_params
  stlp = _atom_param(force_field, 'valency_e', species, dtype)
  voptlp = _atom_param(force_field, 'n_lp_opt', species, dtype)
  # Determine number of lone pairs on atoms
  vund = abo - stlp
  vund_div2 = jnp.trunc(vund / 2.0)
  vlph = 2.0 * vund_div2
  vlpex = vund - vlph
  expvlp = jnp.exp(-gp.p_lp1 * (2.0 + vlpex) * (2.0 + vlpex))
  vlp = expvlp - vund_div2

  # Calculate lone pair energy
  diffvlp = voptlp - vlp
  exphu1 = jnp.exp(-75.0 * diffvlp)
  hulp1 = 1.0 / (1.0 + exphu1)
  elph = _atom_param(force_field, 'p_lp2', species, dtype) * diffvlp * hulp1
  return elph, vlp


def calculate_lonpar_pot(atoms: Atoms,
                         force_field: ForceField,
                         bond_orders: Optional[BondOrders] = None):
  '''
  Lone pair energy summed over atoms.
  Returns [energy, number of lone pairs per atom].
  '''
  bond_orders = _bond_orders_for(atoms, force_field, bond_orders)
  elph, vlp = _lonpar_terms(bond_orders.species, bond_orders.abo,
                            force_field)
  return [high_precision_sum(elph), vlp]


def lone_pair_energy(i: int,
                     atoms: Atoms,
                     force_field: ForceField,
                     bond_orders: Optional[BondOrders] = None) -> Array:
  """Lone pair energy of atom i."""
  bond_orders = _bond_orders_for(atoms, force_field, bond_orders)
  _check_indices(atoms.positions.shape[0], i)
  elph, _ = _lonpar_terms(bond_orders.species, bond_orders.abo, force_field)
  return elph[i]


def _ovcor_terms(bond_orders, vlp, force_field):
  species = bond_orders.species
  bo = bond_orders.bo
  abo = bond_orders.abo
  dtype = bo.dtype
  gp = force_field.global_params
  my_stlp = _atom_param(force_field, 'valency_e', species, dtype)
  my_aval = _atom_param(force_field, 'valency', species, dtype)
  my_amas = _atom_param(force_field, 'mass', species, dtype)
  my_valp1 = _atom_param(force_field, 'p_ovun5', species, dtype)
  my_vovun = _atom_param(force_field, 'p_ovun2', species, dtype)

  vlptemp = jnp.where(my_amas > 21.0, 0.50 * (my_stlp - my_aval), vlp)
  dfvl = jnp.where(my_amas > 21.0, 0.0, 1.0)
  #  Calculate overcoordination energy
  #  Valency is corrected for lone pairs
  voptlp = 0.50 * (my_stlp - my_aval)
  vlph = (voptlp - vlptemp)
  diffvlph = dfvl * vlph
  diffvlp2 = dfvl.reshape(-1, 1) * vlph.reshape(1, -1)
  # Determine coordination neighboring atoms
  part_1 = bond_orders.bopi + bond_orders.bopi2
  part_2 = abo.reshape(1, -1) - my_aval.reshape(1, -1) - diffvlp2
  sumov = jnp.sum(part_1 * part_2, axis=1)
  mult_vov_de1 = (_pair_param(force_field, 'p_ovun1', species, dtype)
                  * _pair_param(force_field, 'de_sigma', species, dtype))
  sumov2 = jnp.sum(mult_vov_de1 * bo, axis=1)

  exphu1 = jnp.exp(gp.p_ovun4 * sumov)
  vho = 1.0 / (1.0 + gp.p_ovun3 * exphu1)
  diffvlp = diffvlph * vho

  vov1 = abo - my_aval - diffvlp
  exphuo = jnp.exp(my_vovun * vov1)
  hulpo = 1.0 / (1.0 + exphuo)
  hulpp = (1.0 / (vov1 + my_aval + 1e-08))
  eah = sumov2 * hulpp * hulpo * vov1

  # Calculate undercoordination energy
  exphu2 = jnp.exp(gp.p_ovun8 * sumov)
  vuhu1 = 1.0 + gp.p_ovun7 * exphu2
  hulpu2 = 1.0 / vuhu1

  exphu3 = -jnp.exp(gp.p_ovun6 * vov1)
  hulpu3 = -(1.0 + exphu3)

  exphuu = jnp.exp(-my_vovun * vov1)
  hulpu = 1.0 / (1.0 + exphuu)
  eahu = my_valp1 * hulpu * hulpu2 * hulpu3
  eahu = jnp.where(my_valp1 < 0, 0.0, eahu)
  return eah + eahu


def calculate_ovcor_pot(atoms: Atoms,
                        force_field: ForceField,
                        bond_orders: Optional[BondOrders] = None,
                        vlp: Optional[Array] = None) -> Array:
  '''
  Over and under coordination energy summed over atoms.
  '''
  bond_orders = _bond_orders_for(atoms, force_field, bond_orders)
  if vlp is None:
    _, vlp = _lonpar_terms(bond_orders.species, bond_orders.abo, force_field)
  return high_precision_sum(_ovcor_terms(bond_orders, vlp, force_field))


def over_coordination(i: int,
                      atoms: Atoms,
                      force_field: ForceField,
                      bond_orders: Optional[BondOrders] = None) -> Array:
  """Over plus under coordination energy of atom i."""
  bond_orders = _bond_orders_for(atoms, force_field, bond_orders)
  _check_indices(atoms.positions.shape[0], i)
  _, vlp = _lonpar_terms(bond_orders.species, bond_orders.abo, force_field)
  return _ovcor_terms(bond_orders, vlp, force_field)[i]


# Valence angle terms


@dataclasses.dataclass
class ValenceCenter(object):
  """Per-atom quantities of an atom acting as the center of an angle."""
  expsbo: Array
  exbo: Array
  ecsboadj: Array
  ovb: Array
  p_val3: Array
  p_val5: Array


def calculate_valence_centers(bond_orders: BondOrders,
                              vlp: Array,
                              force_field: ForceField) -> ValenceCenter:
  species = bond_orders.species
  bo = bond_orders.bo
  abo = bond_orders.abo
  dtype = bo.dtype
  gp = force_field.global_params

  # calculate sbo2 and vmbo for every atom
  sbo2 = jnp.sum(bond_orders.bopi, axis=1) + jnp.sum(bond_orders.bopi2,
                                                     axis=1)
  vmbo = jnp.prod(jnp.exp(-bo ** 8), axis=1)
  exbo = abo - _atom_param(force_field, 'valency_boc', species, dtype)
  exlp1 = abo - _atom_param(force_field, 'valency_e', species, dtype)
  exlp2 = 2.0 * jnp.trunc(exlp1 / 2.0)
  exlp = exlp1 - exlp2
  vlpadj = jnp.where(exlp < 0.0, vlp, 0.0)
  sbo2 = sbo2 + (1 - vmbo) * (-exbo - gp.p_val8 * vlpadj)
  sbo2 = jnp.clip(sbo2, 0, 2.0)
  low = jnp.where(sbo2 < 1, sbo2, 1.0)
  high = jnp.where(sbo2 >= 1, 2.0 - sbo2, 1.0)
  # add 1e-15 so that ln(a) is not nan
  sbo2 = jnp.where(sbo2 < 1,
                   (low + 1e-15) ** gp.p_val9,
                   2.0 - (high + 1e-15) ** gp.p_val9)
  expsbo = jnp.exp(-gp.p_val10 * (2.0 - sbo2))

  # penalty for two double bonds in valency angle
  exbo2 = abo - _atom_param(force_field, 'valency', species, dtype)
  expov = jnp.exp(gp.p_pen4 * exbo2)
  expov2 = jnp.exp(-gp.p_pen3 * exbo2)
  ecsboadj = (2.0 + expov2) / (1.0 + expov + expov2)

  ovb = abo - _atom_param(force_field, 'valency_val', species, dtype)
  return ValenceCenter(expsbo=expsbo,
                       exbo=exbo,
                       ecsboadj=ecsboadj,
                       ovb=ovb,
                       p_val3=_atom_param(force_field, 'p_val3', species,
                                          dtype),
                       p_val5=_atom_param(force_field, 'p_val5', species,
                                          dtype))


def _valence_bond_orders(bo_ij, bo_jk, cutoff2):
  # triples count only when the product of their bond orders is significant
  mask = bo_ij * bo_jk >= 0.00001
  boa = bo_ij - cutoff2
  bob = bo_jk - cutoff2
  mask = mask & (boa > 0) & (bob > 0)
  return jnp.clip(boa, 0, None), jnp.clip(bob, 0, None), mask


def _valency_pot(boa, bob, theta, expsbo, exbo, p_val3, p_val5, theta_00,
                 p_val1, p_val2, p_val4, p_val7, p_val6):
  expun = jnp.exp(-p_val7 * exbo)
  expun2 = jnp.exp(p_val6 * exbo)
  htun1 = 2.0 + expun2
  htun2 = 1.0 + expun + expun2
  evboadj2 = p_val5 - (p_val5 - 1.0) * (htun1 / htun2)

  thetao = 180.0 - theta_00 * (1.0 - expsbo)
  thetao = thetao * dgrrdn
  thdif = (thetao - theta)
  exphu = p_val1 * jnp.exp(-p_val2 * thdif * thdif)
  exphu2 = p_val1 - exphu
  # To avoid linear Me-H-Me angles (6/6/06)
  exphu2 = jnp.where(p_val1 < 0.0, exphu2 - p_val1, exphu2)

  # add 1e-20 so that ln(a) is not nan
  boap = (boa + 1e-20) ** p_val4
  bobp = (bob + 1e-20) ** p_val4
  exa2 = 1.0 - jnp.exp(-p_val3 * boap)
  exb2 = 1.0 - jnp.exp(-p_val3 * bobp)
  return evboadj2 * exa2 * exb2 * exphu2


def _penalty_pot(boa, bob, ecsboadj, p_pen1, p_pen2):
  exphu1 = jnp.exp(-p_pen2 * (boa - 2.0) * (boa - 2.0))
  exphu2 = jnp.exp(-p_pen2 * (bob - 2.0) * (bob - 2.0))
  return p_pen1 * ecsboadj * exphu1 * exphu2


def _coalition_pot(boa, bob, abo_i, abo_k, ovb, p_coa1, gp):
  unda = abo_i - boa
  undc = abo_k - bob
  ba = (boa - 1.50) * (boa - 1.50)
  bb = (bob - 1.50) * (bob - 1.50)
  exphua = jnp.exp(-gp.p_coa4 * ba)
  exphub = jnp.exp(-gp.p_coa4 * bb)
  exphuua = jnp.exp(-gp.p_coa3 * unda * unda)
  exphuuc = jnp.exp(-gp.p_coa3 * undc * undc)
  hulpob = 1.0 / (1.0 + jnp.exp(gp.p_coa2 * ovb))
  return p_coa1 * exphua * exphub * exphuua * exphuuc * hulpob


def calculate_valency_pot(atoms: Atoms,
                          force_field: ForceField,
                          bond_orders: Optional[BondOrders] = None,
                          vlp: Optional[Array] = None):
  '''
  Valence angle, valence penalty and coalition energies summed over every
  triple i-j-k (j central, i < k) whose two bonds exceed cutoff2.
  Returns [valency, penalty, coalition].

  Raises:
    ParameterLookupError: if a bonded triple has no angle record.
  '''
  bond_orders = _bond_orders_for(atoms, force_field, bond_orders)
  species = bond_orders.species
  if vlp is None:
    _, vlp = _lonpar_terms(species, bond_orders.abo, force_field)
  gp = force_field.global_params
  dtype = bond_orders.bo.dtype
  N = species.shape[0]

  inds = jnp.arange(N)
  index_mask = ((inds.reshape(-1, 1, 1) != inds.reshape(1, -1, 1))
                & (inds.reshape(1, 1, -1) != inds.reshape(1, -1, 1))
                & (inds.reshape(-1, 1, 1) < inds.reshape(1, 1, -1)))
  bo = bond_orders.bo
  # bo is symmetric: bo[j, i] == bo[i, j]
  boa, bob, bonded = _valence_bond_orders(bo.reshape(N, N, 1),
                                          bo.reshape(1, N, N),
                                          force_field.cutoff2)
  bonded = bonded & index_mask

  present = jnp.asarray(force_field.angle_mask)[species.reshape(-1, 1, 1),
                                                species.reshape(1, -1, 1),
                                                species.reshape(1, 1, -1)]
  missing = onp.argwhere(onp.asarray(bonded & ~present))
  if len(missing):
    i, j, k = (int(x) for x in missing[0])
    types = tuple(int(species[x]) for x in (i, j, k))
    raise ParameterLookupError(
        f'No valence angle parameters for types {types} of bonded atoms '
        f'{(i, j, k)}; {len(missing)} bonded triples lack parameters.')

  theta = calculate_valence_angles(bond_orders.positions)
  center = calculate_valence_centers(bond_orders, vlp, force_field)

  def at_center(x):
    return x.reshape(1, N, 1)

  evh = _valency_pot(boa, bob, theta,
                     at_center(center.expsbo), at_center(center.exbo),
                     at_center(center.p_val3), at_center(center.p_val5),
                     _angle_param(force_field, 'theta_00', species, dtype),
                     _angle_param(force_field, 'p_val1', species, dtype),
                     _angle_param(force_field, 'p_val2', species, dtype),
                     _angle_param(force_field, 'p_val4', species, dtype),
                     _angle_param(force_field, 'p_val7', species, dtype),
                     gp.p_val6)
  epenh = _penalty_pot(boa, bob, at_center(center.ecsboadj),
                       _angle_param(force_field, 'p_pen1', species, dtype),
                       gp.p_pen2)
  abo = bond_orders.abo
  ecoah = _coalition_pot(boa, bob, abo.reshape(N, 1, 1), abo.reshape(1, 1, N),
                         at_center(center.ovb),
                         _angle_param(force_field, 'p_coa1', species, dtype),
                         gp)
  total_pot = high_precision_sum(jnp.where(bonded, evh, 0.0))
  total_penalty = high_precision_sum(jnp.where(bonded, epenh, 0.0))
  total_conj = high_precision_sum(jnp.where(bonded, ecoah, 0.0))
  return [total_pot, total_penalty, total_conj]


def _triple_terms(i, j, k, atoms, force_field, bond_orders):
  """Shared lookups of the per-triple valence functions."""
  bond_orders = _bond_orders_for(atoms, force_field, bond_orders)
  _check_indices(atoms.positions.shape[0], i, j, k)
  species = bond_orders.species
  angle = force_field.angle(int(species[i]), int(species[j]),
                            int(species[k]))
  boa, bob, bonded = _valence_bond_orders(bond_orders.bo[j, i],
                                          bond_orders.bo[j, k],
                                          force_field.cutoff2)
  _, vlp = _lonpar_terms(species, bond_orders.abo, force_field)
  center = calculate_valence_centers(bond_orders, vlp, force_field)
  return bond_orders, angle, boa, bob, bonded, center


def valence_energy(i: int,
                   j: int,
                   k: int,
                   atoms: Atoms,
                   force_field: ForceField,
                   bond_orders: Optional[BondOrders] = None) -> Array:
  """Valence angle energy of the angle i-j-k with j as the central atom."""
  bond_orders, angle, boa, bob, bonded, center = _triple_terms(
      i, j, k, atoms, force_field, bond_orders)
  positions = bond_orders.positions
  theta = jnp.arccos(calculate_angle(positions[i] - positions[j],
                                     positions[k] - positions[j]))
  evh = _valency_pot(boa, bob, theta, center.expsbo[j], center.exbo[j],
                     center.p_val3[j], center.p_val5[j], angle.theta_00,
                     angle.p_val1, angle.p_val2, angle.p_val4, angle.p_val7,
                     force_field.global_params.p_val6)
  return jnp.where(bonded, evh, 0.0)


def penalty_energy(i: int,
                   j: int,
                   k: int,
                   atoms: Atoms,
                   force_field: ForceField,
                   bond_orders: Optional[BondOrders] = None) -> Array:
  """Valence penalty energy of the angle i-j-k with j as the central atom."""
  _, angle, boa, bob, bonded, center = _triple_terms(
      i, j, k, atoms, force_field, bond_orders)
  epenh = _penalty_pot(boa, bob, center.ecsboadj[j], angle.p_pen1,
                       force_field.global_params.p_pen2)
  return jnp.where(bonded, epenh, 0.0)


def coalition_energy(i: int,
                     j: int,
                     k: int,
                     atoms: Atoms,
                     force_field: ForceField,
                     bond_orders: Optional[BondOrders] = None) -> Array:
  """Three-body conjugation energy of i-j-k with j as the central atom."""
  bond_orders, angle, boa, bob, bonded, center = _triple_terms(
      i, j, k, atoms, force_field, bond_orders)
  ecoah = _coalition_pot(boa, bob, bond_orders.abo[i], bond_orders.abo[k],
                         center.ovb[j], angle.p_coa1,
                         force_field.global_params)
  return jnp.where(bonded, ecoah, 0.0)


# Terms without an implementation. They resolve their parameters so that
# missing records are reported before the missing implementation.


def torsion_energy(i: int,
                   j: int,
                   k: int,
                   l: int,
                   atoms: Atoms,
                   force_field: ForceField,
                   bond_orders: Optional[BondOrders] = None) -> Array:
  """Torsion energy of the dihedral i-j-k-l. Consumes the torsion table."""
  species = validate_atoms(atoms, force_field)
  _check_indices(atoms.positions.shape[0], i, j, k, l)
  force_field.torsion(*(int(species[x]) for x in (i, j, k, l)))
  raise NotImplementedError('The torsion energy is not implemented.')


def hydrogen_bond_interaction(i: int,
                              j: int,
                              k: int,
                              atoms: Atoms,
                              force_field: ForceField,
                              bond_orders: Optional[BondOrders] = None
                              ) -> Array:
  """Hydrogen bond energy of donor i, hydrogen j and acceptor k."""
  species = validate_atoms(atoms, force_field)
  _check_indices(atoms.positions.shape[0], i, j, k)
  force_field.hydrogen_bond(*(int(species[x]) for x in (i, j, k)))
  raise NotImplementedError('The hydrogen bond energy is not implemented.')


def conjugation_energy(i: int,
                       j: int,
                       k: int,
                       l: int,
                       atoms: Atoms,
                       force_field: ForceField,
                       bond_orders: Optional[BondOrders] = None) -> Array:
  """Four-body conjugation energy; uses p_cot1 of the torsion table."""
  species = validate_atoms(atoms, force_field)
  _check_indices(atoms.positions.shape[0], i, j, k, l)
  force_field.torsion(*(int(species[x]) for x in (i, j, k, l)))
  raise NotImplementedError('The four-body conjugation energy is not '
                            'implemented.')


def c2_correction(i: int,
                  j: int,
                  atoms: Atoms,
                  force_field: ForceField,
                  bond_orders: Optional[BondOrders] = None) -> Array:
  """C2 over coordination correction of the pair (i, j); uses k_c2."""
  species = validate_atoms(atoms, force_field)
  _check_indices(atoms.positions.shape[0], i, j)
  force_field.bond(int(species[i]), int(species[j]))
  raise NotImplementedError('The C2 correction is not implemented.')


# Aggregate


def calculate_reaxff_energy(atoms: Atoms,
                            force_field: ForceField,
                            terms: Sequence[str] = DEFAULT_TERMS,
                            bond_orders: Optional[BondOrders] = None
                            ) -> Dict[str, Array]:
  '''
  Evaluates the requested energy terms (kcal/mol) of a snapshot.

  The taper and the bond orders are computed once and shared by all terms.
  Returns a dictionary keyed by term name with the sum under 'E_total'.
  '''
  unknown = [t for t in terms if t not in ALL_TERMS]
  if unknown:
    raise ValueError(f'Unknown energy terms {unknown}; available terms are '
                     f'{ALL_TERMS}.')
  validate_atoms(atoms, force_field)
  tap = force_field_taper(force_field)

  if any(t in _BONDED_TERMS for t in terms):
    bond_orders = _bond_orders_for(atoms, force_field, bond_orders)
    elph, vlp = _lonpar_terms(bond_orders.species, bond_orders.abo,
                              force_field)

  result_dict = {}
  if 'E_covalent' in terms:
    result_dict['E_covalent'] = calculate_covbon_pot(atoms, force_field,
                                                     bond_orders)
  if 'E_lone_pair' in terms:
    result_dict['E_lone_pair'] = high_precision_sum(elph)
  if 'E_over_under' in terms:
    result_dict['E_over_under'] = calculate_ovcor_pot(atoms, force_field,
                                                      bond_orders, vlp)
  if any(t in terms for t in ('E_valency', 'E_valency_penalty',
                              'E_valency_conj')):
    val, pen, conj = calculate_valency_pot(atoms, force_field, bond_orders,
                                           vlp)
    for name, value in (('E_valency', val), ('E_valency_penalty', pen),
                        ('E_valency_conj', conj)):
      if name in terms:
        result_dict[name] = value
  if 'E_vdw' in terms:
    result_dict['E_vdw'] = calculate_vdw_pot(atoms, force_field, tap)
  if 'E_coulomb' in terms:
    result_dict['E_coulomb'] = calculate_coulomb_pot(atoms, force_field, tap)
  if 'E_charge' in terms:
    result_dict['E_charge'] = calculate_charge_energy(atoms, force_field)

  result_dict['E_total'] = sum(result_dict[t] for t in ALL_TERMS
                               if t in result_dict)
  if logging.level_debug():
    logging.debug('ReaxFF energies for %d atoms: %s', atoms.positions.shape[0],
                  {k: float(v) for k, v in result_dict.items()})
  return result_dict


def reaxff_energy_fn(force_field: ForceField,
                     terms: Sequence[str] = DEFAULT_TERMS):
  '''
  Returns a function mapping an `Atoms` snapshot to its total energy.
  '''
  unknown = [t for t in terms if t not in ALL_TERMS]
  if unknown:
    raise ValueError(f'Unknown energy terms {unknown}; available terms are '
                     f'{ALL_TERMS}.')

  def energy_fn(atoms: Atoms) -> Array:
    return calculate_reaxff_energy(atoms, force_field, terms)['E_total']

  return energy_fn
