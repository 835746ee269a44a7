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

"""Tests for reaxff_md.space and the dense ReaxFF geometry."""

from absl.testing import absltest
from absl.testing import parameterized

import jax
jax.config.update("jax_enable_x64", True)
from jax import grad, random
import jax.numpy as jnp
import numpy as onp

from reaxff_md import space, test_util
from reaxff_md.util import f32, f64
from reaxff_md.reaxff import reaxff_interactions

test_util.update_test_tolerance(1e-5, 1e-12)

PARTICLE_COUNT = 7
POSITION_DTYPE = [f32, f64]


# pylint: disable=invalid-name
class SpaceTest(test_util.ReaxFFTestCase):

  @parameterized.named_parameters(
      [{'testcase_name': f'_dtype={dtype.__name__}', 'dtype': dtype}
       for dtype in POSITION_DTYPE])
  def test_free_displacement(self, dtype):
    key = random.PRNGKey(0)
    Ra, Rb = random.normal(key, (2, 3), dtype=dtype)
    displacement = space.free()
    self.assertAllClose(displacement(Ra, Rb), Ra - Rb)
    self.assertEqual(displacement(Ra, Rb).dtype, dtype)

  def test_displacement_of_sets_raises(self):
    displacement = space.free()
    R = jnp.zeros((PARTICLE_COUNT, 3))
    with self.assertRaises(ValueError):
      displacement(R, R)
    with self.assertRaises(ValueError):
      displacement(jnp.zeros((3,)), jnp.zeros((2,)))

  def test_map_product_layout(self):
    key = random.PRNGKey(1)
    Ra = random.normal(key, (PARTICLE_COUNT, 3), dtype=f64)
    Rb = Ra[:3] + 1.0
    displacement = space.free()
    dR = space.map_product(displacement)(Ra, Rb)
    self.assertEqual(dR.shape, (3, PARTICLE_COUNT, 3))
    self.assertAllClose(dR[2, 5], Ra[5] - Rb[2])

  def test_distance_of_displacements(self):
    key = random.PRNGKey(2)
    R = random.normal(key, (PARTICLE_COUNT, 3), dtype=f64)
    displacement = space.free()
    dr = space.distance(space.map_product(displacement)(R, R))
    self.assertAllClose(dr, reaxff_interactions.calculate_distances(R))

  def test_distance_grad_at_zero_is_finite(self):
    g = grad(lambda dR: space.distance(dR))(jnp.zeros((3,), dtype=f64))
    self.assertAllClose(g, jnp.zeros((3,), dtype=f64))

  @parameterized.named_parameters(
      [{'testcase_name': f'_dtype={dtype.__name__}', 'dtype': dtype}
       for dtype in POSITION_DTYPE])
  def test_distances_symmetric(self, dtype):
    key = random.PRNGKey(3)
    R = random.uniform(key, (PARTICLE_COUNT, 3), dtype=dtype) * 5.0
    dr = reaxff_interactions.calculate_distances(R)
    self.assertAllClose(dr, dr.T)
    self.assertAllClose(jnp.diag(dr), jnp.zeros(PARTICLE_COUNT, dtype=dtype))
    self.assertAllClose(dr[1, 4], jnp.linalg.norm(R[1] - R[4]))

  def test_valence_angles(self):
    R = jnp.array([[1.0, 0.0, 0.0],
                   [0.0, 0.0, 0.0],
                   [0.0, 2.0, 0.0],
                   [-1.0, 0.0, 0.0]], dtype=f64)
    theta = reaxff_interactions.calculate_valence_angles(R)
    self.assertEqual(theta.shape, (4, 4, 4))
    self.assertAllClose(theta[0, 1, 2], onp.pi / 2, atol=1e-8)
    self.assertAllClose(theta[2, 1, 0], onp.pi / 2, atol=1e-8)
    self.assertAllClose(theta[2, 1, 3], onp.pi / 2, atol=1e-8)
    # the cosine is clipped away from -1
    self.assertAllClose(theta[0, 1, 3], onp.pi, atol=1e-4)


if __name__ == '__main__':
  absltest.main()
