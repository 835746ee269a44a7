# Copyright 2019 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Free space in which ReaxFF clusters are evaluated.

A space is described by its displacement function:

  * `displacement_fn(Ra, Rb, **kwargs)`
    Computes the displacement between two particles. Ra and Rb should be
    ndarrays of shape [spatial_dim]. To compute displacements between every
    pair of particles see `map_product`.

Only free boundary conditions are provided; the energy engine works on
isolated clusters.
"""

from typing import Callable

from jax import vmap

import jax.numpy as jnp

from reaxff_md.util import Array
from reaxff_md.util import safe_mask


# Types


DisplacementFn = Callable[[Array, Array], Array]


# Primitive Spatial Transforms


def pairwise_displacement(Ra: Array, Rb: Array) -> Array:
  """Compute the displacement between two positions.

  Args:
    Ra: Vector of positions; ndarray(shape=[spatial_dim]).
    Rb: Vector of positions; ndarray(shape=[spatial_dim]).

  Returns:
    Displacement vector; ndarray(shape=[spatial_dim]).
  """
  if len(Ra.shape) != 1:
    msg = ('Can only compute displacements between vectors. To compute '
           'displacements between sets of vectors use map_product.')
    raise ValueError(msg)

  if Ra.shape != Rb.shape:
    msg = 'Can only compute displacement between vectors of equal dimension.'
    raise ValueError(msg)

  return Ra - Rb


def square_distance(dR: Array) -> Array:
  """Computes square distances.

  Args:
    dR: Matrix of displacements; ndarray(shape=[..., spatial_dim]).
  Returns:
    Matrix of squared distances; ndarray(shape=[...]).
  """
  return jnp.sum(dR ** 2, axis=-1)


def distance(dR: Array) -> Array:
  """Computes distances.

  Args:
    dR: Matrix of displacements; ndarray(shape=[..., spatial_dim]).
  Returns:
    Matrix of distances; ndarray(shape=[...]).
  """
  dr = square_distance(dR)
  return safe_mask(dr > 0, jnp.sqrt, dr)


""" Spaces """


def free() -> DisplacementFn:
  """Free boundary conditions."""
  def displacement_fn(Ra: Array, Rb: Array, **unused_kwargs) -> Array:
    return pairwise_displacement(Ra, Rb)
  return displacement_fn


def map_product(displacement: DisplacementFn
                ) -> Callable[[Array, Array], Array]:
  """Vectorizes a displacement function over all pairs.

  If Ra has shape [n, spatial_dim] and Rb has shape [m, spatial_dim] the
  output has leading shape [m, n]; entry [b, a] is `displacement(Ra[a], Rb[b])`.
  """
  return vmap(vmap(displacement, (0, None), 0), (None, 0), 0)
