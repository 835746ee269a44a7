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

"""Frozen dataclasses that can be passed through jax transformations.

Parameter records and the force field container are static metadata: they are
hashed and compared by value and never traced. Runtime snapshots such as atom
positions are pytree data.
"""

import dataclasses
import jax


def dataclass(clz):
  """Create a frozen class which can be passed to functional transformations.

  Fields declared with `static_field` are treated as auxiliary data by
  `jax.tree_util`; all other fields are leaves.

  Args:
    clz: the class that will be transformed by the decorator.
  Returns:
    The new class.
  """
  data_clz = dataclasses.dataclass(frozen=True)(clz)
  meta_fields = []
  data_fields = []
  for name, field_info in data_clz.__dataclass_fields__.items():
    if field_info.metadata.get('static', False):
      meta_fields.append(name)
    else:
      data_fields.append(name)

  def iterate_clz(x):
    meta = tuple(getattr(x, name) for name in meta_fields)
    data = tuple(getattr(x, name) for name in data_fields)
    return data, meta

  def clz_from_iterable(meta, data):
    kwargs = dict(zip(meta_fields, meta))
    kwargs.update(zip(data_fields, data))
    return data_clz(**kwargs)

  jax.tree_util.register_pytree_node(data_clz, iterate_clz, clz_from_iterable)

  return data_clz


def static_field(**kwargs):
  return dataclasses.field(metadata={'static': True}, **kwargs)


replace = dataclasses.replace
is_dataclass = dataclasses.is_dataclass
fields = dataclasses.fields
