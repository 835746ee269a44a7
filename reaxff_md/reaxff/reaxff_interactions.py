"""
Contains the atom snapshot and the geometry (distances and valence angles)
used by the ReaxFF energy terms.

Interactions are evaluated densely over all pairs and triples of the
snapshot; clusters handled here are small.
"""
from typing import Optional, Sequence

import jax.numpy as jnp
import numpy as onp

from reaxff_md import dataclasses, space, util
from reaxff_md.util import safe_mask
from reaxff_md.reaxff.reaxff_forcefield import (ForceField,
                                                ParameterLookupError)

Array = util.Array


@dataclasses.dataclass
class Atoms(object):
  """A snapshot of the configuration owned by the caller.

  Attributes:
    positions: ndarray(shape=[N, 3]) Cartesian coordinates in Angstrom.
    species: ndarray(shape=[N], dtype=int) 0-based atom type indices into
      the force field.
    charges: optional ndarray(shape=[N]) partial charges in units of e.
  """
  positions: Array
  species: Array
  charges: Optional[Array] = None

  @property
  def num_atoms(self) -> int:
    return self.positions.shape[0]


def atoms_from_names(force_field: ForceField,
                     positions: Array,
                     names: Sequence[str],
                     charges: Optional[Array] = None) -> Atoms:
  """Builds an `Atoms` snapshot from atom type names such as 'C' or 'H'."""
  species = onp.array([force_field.type_index(n) for n in names],
                      dtype=onp.int32)
  positions = jnp.asarray(positions)
  if positions.shape != (len(species), 3):
    raise ValueError(f'Expected positions of shape ({len(species)}, 3), got '
                     f'{positions.shape}.')
  if charges is not None:
    charges = jnp.asarray(charges)
  return Atoms(positions=positions, species=jnp.asarray(species),
               charges=charges)


def validate_atoms(atoms: Atoms, force_field: ForceField) -> Array:
  """Checks a snapshot against a force field and returns its species.

  Raises:
    ValueError: if positions and species do not describe the same atoms.
    ParameterLookupError: if a species index has no atom type.
  """
  positions = jnp.asarray(atoms.positions)
  species = onp.asarray(atoms.species)
  if positions.ndim != 2 or positions.shape[1] != 3:
    raise ValueError(f'Positions must have shape [N, 3], got '
                     f'{positions.shape}.')
  if species.shape != (positions.shape[0],):
    raise ValueError(f'Species must have shape ({positions.shape[0]},), got '
                     f'{species.shape}.')
  if not onp.issubdtype(species.dtype, onp.integer):
    raise ValueError(f'Species must be integer type indices, got dtype '
                     f'{species.dtype}.')
  invalid = (species < 0) | (species >= force_field.num_atom_types)
  if onp.any(invalid):
    raise ParameterLookupError(
        f'Species {sorted(set(species[invalid].tolist()))} are not defined; '
        f'the force field has {force_field.num_atom_types} atom types.')
  return jnp.asarray(species, dtype=jnp.int32)


def calculate_displacements(positions: Array) -> Array:
  '''
  Displacements between all pairs of atoms.
  Entry [j, i] is positions[i] - positions[j].
  '''
  displacement = space.free()
  return space.map_product(displacement)(positions, positions)


def calculate_distances(positions: Array) -> Array:
  '''
  Symmetric [N, N] matrix of interatomic distances, zero on the diagonal.
  '''
  return space.distance(calculate_displacements(positions))


def calculate_angle(disp12, disp32):
  '''
  Assume there are 3 atoms: atom 1,2 and 3 where 2 is the center
  disp12 = pos1 - pos2
  disp32 = pos3 - pos2
  Returns the cosine of the angle, clipped away from +-1.
  '''
  prev_dtype = disp12.dtype
  if prev_dtype == jnp.float64:
    EPS = 1E-10
  else:
    EPS = 1E-6
  d12_sq = jnp.sum(disp12 * disp12, axis=-1)
  d32_sq = jnp.sum(disp32 * disp32, axis=-1)
  d12 = safe_mask(d12_sq > 0, jnp.sqrt, d12_sq)
  d32 = safe_mask(d32_sq > 0, jnp.sqrt, d32_sq)
  norm1 = d12 + EPS
  norm2 = d32 + EPS
  dot_prod = jnp.sum(disp12 * disp32, axis=-1) / (norm1 * norm2)
  dot_prod = jnp.clip(dot_prod, -1.0 + EPS, 1.0 - EPS)
  return dot_prod.astype(prev_dtype)


def calculate_valence_angles(positions: Array) -> Array:
  '''
  Valence angles (radians) of every triple, shape [N, N, N].
  Entry [i, j, k] is the angle i-j-k at the central atom j.
  Entries with repeated indices are meaningless and must be masked.
  '''
  disps = calculate_displacements(positions)
  # disps[j, i] = R_i - R_j
  disp_ji = jnp.transpose(disps, (1, 0, 2))[:, :, None, :]
  disp_jk = disps[None, :, :, :]
  cos_angles = calculate_angle(disp_ji, disp_jk)
  return jnp.arccos(cos_angles)
