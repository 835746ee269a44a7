"""
Contains force field related code: the parameter records of a ReaxFF
parameter file, the immutable container holding them, and the errors raised
while building or querying it.
"""
import enum
import functools
import math
from typing import Optional, Sequence, Tuple

import numpy as onp
from frozendict import frozendict

from reaxff_md import dataclasses, util

Array = util.Array

# Marker stored in place of a type index for torsion rows that apply to any
# type at that position (written as 0 in the parameter file).
WILDCARD = -1

# Positions of the unused general parameters in the global section.
RESERVED_GLOBAL_INDICES = (13, 18, 22, 26, 34, 35, 36, 37)
NUM_GLOBAL_PARAMS = 39


class FileFormatError(ValueError):
  """Raised when a parameter file does not follow the ReaxFF layout.

  Attributes:
    section: the `Section` being parsed when the problem was found.
    line_number: 1-based physical line number in the parameter file.
    expected: what the parser expected (a line count, column count, ...).
    actual: what it found instead.
  """

  def __init__(self, message, section=None, line_number=None,
               expected=None, actual=None):
    self.section = section
    self.line_number = line_number
    self.expected = expected
    self.actual = actual
    where = []
    if section is not None:
      where.append(f'{section.label} section')
    if line_number is not None:
      where.append(f'line {line_number}')
    if where:
      message = f'{", ".join(where)}: {message}'
    if expected is not None or actual is not None:
      message = f'{message} (expected {expected}, found {actual})'
    super().__init__(message)


class ParameterLookupError(LookupError):
  """Raised when no parameter record exists for a requested type tuple."""


class PreconditionError(ValueError):
  """Raised when an energy is requested without the inputs it needs."""


class _RecordError(ValueError):
  """A bad token inside a record; `offset` is the line within the record."""

  def __init__(self, message, offset=0):
    self.offset = offset
    super().__init__(message)


def _parse_float(token: str, offset: int) -> float:
  try:
    value = float(token)
  except ValueError:
    raise _RecordError(f'cannot read {token!r} as a number', offset) from None
  if not math.isfinite(value):
    raise _RecordError(f'non-finite value {token!r}', offset)
  return value


def _parse_type_index(token: str,
                      num_atom_types: int,
                      allow_wildcard: bool,
                      offset: int) -> int:
  try:
    index = int(token)
  except ValueError:
    raise _RecordError(f'cannot read {token!r} as a type index',
                       offset) from None
  if index == 0 and allow_wildcard:
    return WILDCARD
  if index < 1 or index > num_atom_types:
    raise _RecordError(
        f'type index {index} outside 1..{num_atom_types}', offset)
  return index - 1


class _Record(object):
  """Mixin that builds a record from the token lines of one file entry.

  `layout` lists, per physical line, the field stored in each column:
  `'@'` marks a type reference, `None` a reserved column.
  `required_columns` gives the minimum column count of each line; columns
  past it that are missing read as zero.
  """
  layout: Tuple[Tuple[Optional[str], ...], ...] = ()
  required_columns: Tuple[int, ...] = ()
  allow_wildcard = False

  @classmethod
  def from_lines(cls, lines: Sequence[Sequence[str]], num_atom_types: int):
    types = []
    values = {}
    reserved = []
    for offset, (names, tokens) in enumerate(zip(cls.layout, lines)):
      for column, name in enumerate(names):
        token = tokens[column] if column < len(tokens) else '0.0'
        if name == '@':
          types.append(_parse_type_index(token, num_atom_types,
                                         cls.allow_wildcard, offset))
        elif name == 'name':
          values[name] = token
        elif name is None:
          reserved.append(_parse_float(token, offset))
        else:
          values[name] = _parse_float(token, offset)
    return cls._build(tuple(types), values, tuple(reserved))

  @classmethod
  def _build(cls, types, values, reserved):
    return cls(types=types, reserved=reserved, **values)


@dataclasses.dataclass
class AtomTypeRecord(_Record):
  """One-body parameters of an atom type (four lines in the file)."""
  name: str
  r_sigma: float
  valency: float
  mass: float
  r_vdw: float
  epsilon: float
  gamma: float
  r_pi: float
  valency_e: float
  alpha: float
  gamma_w: float
  valency_boc: float
  p_ovun5: float
  chi_eem: float
  eta_eem: float
  p_hbond: float
  r_pipi: float
  p_lp2: float
  heat_increment: float
  p_boc4: float
  p_boc3: float
  p_boc5: float
  p_ovun2: float
  p_val3: float
  valency_val: float
  p_val5: float
  r_core: float
  e_core: float
  a_core: float
  reserved: Tuple[float, ...] = (0.0, 0.0, 0.0, 0.0)

  layout = (
      ('name', 'r_sigma', 'valency', 'mass', 'r_vdw', 'epsilon', 'gamma',
       'r_pi', 'valency_e'),
      ('alpha', 'gamma_w', 'valency_boc', 'p_ovun5', None, 'chi_eem',
       'eta_eem', 'p_hbond'),
      ('r_pipi', 'p_lp2', 'heat_increment', 'p_boc4', 'p_boc3', 'p_boc5',
       None, None),
      ('p_ovun2', 'p_val3', None, 'valency_val', 'p_val5', 'r_core',
       'e_core', 'a_core'),
  )
  required_columns = (9, 8, 6, 8)

  @classmethod
  def _build(cls, types, values, reserved):
    return cls(reserved=reserved, **values)

  @property
  def n_lp_opt(self) -> float:
    """Optimal number of lone pairs."""
    return 0.5 * (self.valency_e - self.valency)


@dataclasses.dataclass
class BondTypeRecord(_Record):
  """Two-body parameters for an unordered pair of atom types.

  Fields from `de_sigma` to `ovc` come from an explicit bond row of the
  file. The remaining fields are combined from the one-body parameters of the
  two atom types (and overridden by off-diagonal rows). A record with
  `explicit=False` was derived for a pair the file declares no bond row for.
  """
  type_i: int
  type_j: int
  explicit: bool = True
  de_sigma: float = 0.0
  de_pi: float = 0.0
  de_pipi: float = 0.0
  p_be1: float = 0.0
  p_bo5: float = 0.0
  v13cor: float = 0.0
  p_bo6: float = 0.0
  p_ovun1: float = 0.0
  p_be2: float = 0.0
  p_bo3: float = 0.0
  p_bo4: float = 0.0
  p_bo1: float = 0.0
  p_bo2: float = 0.0
  ovc: float = 0.0
  reserved: Tuple[float, ...] = (0.0, 0.0)
  # combined from the one-body records
  r_sigma: float = 0.0
  r_pi: float = 0.0
  r_pipi: float = 0.0
  p_boc3: float = 0.0
  p_boc4: float = 0.0
  p_boc5: float = 0.0
  d_ij: float = 0.0
  r_vdw: float = 0.0
  alpha: float = 0.0
  gamma_w: float = 0.0
  gamma: float = 0.0
  r_core: float = 0.0
  e_core: float = 0.0
  a_core: float = 0.0

  layout = (
      ('@', '@', 'de_sigma', 'de_pi', 'de_pipi', 'p_be1', 'p_bo5', 'v13cor',
       'p_bo6', 'p_ovun1'),
      ('p_be2', 'p_bo3', 'p_bo4', None, 'p_bo1', 'p_bo2', 'ovc', None),
  )
  required_columns = (10, 7)

  @classmethod
  def _build(cls, types, values, reserved):
    return cls(type_i=types[0], type_j=types[1], reserved=reserved, **values)


@dataclasses.dataclass
class OffDiagonalRecord(_Record):
  """Explicit pair values replacing combined vdW and radius parameters."""
  type_i: int
  type_j: int
  d_ij: float
  r_vdw: float
  alpha: float
  r_sigma: float
  r_pi: float
  r_pipi: float
  reserved: Tuple[float, ...] = ()

  layout = (('@', '@', 'd_ij', 'r_vdw', 'alpha', 'r_sigma', 'r_pi',
             'r_pipi'),)
  required_columns = (8,)

  @classmethod
  def _build(cls, types, values, reserved):
    return cls(type_i=types[0], type_j=types[1], **values)


@dataclasses.dataclass
class AngleTypeRecord(_Record):
  """Valence angle parameters; `types[1]` is the central atom type."""
  types: Tuple[int, int, int]
  theta_00: float
  p_val1: float
  p_val2: float
  p_coa1: float
  p_val7: float
  p_pen1: float
  p_val4: float
  reserved: Tuple[float, ...] = ()

  layout = (('@', '@', '@', 'theta_00', 'p_val1', 'p_val2', 'p_coa1',
             'p_val7', 'p_pen1', 'p_val4'),)
  required_columns = (10,)


@dataclasses.dataclass
class TorsionTypeRecord(_Record):
  types: Tuple[int, int, int, int]
  v1: float
  v2: float
  v3: float
  p_tor1: float
  p_cot1: float
  reserved: Tuple[float, ...] = (0.0, 0.0)

  layout = (('@', '@', '@', '@', 'v1', 'v2', 'v3', 'p_tor1', 'p_cot1',
             None, None),)
  required_columns = (9,)
  allow_wildcard = True


@dataclasses.dataclass
class HydrogenBondTypeRecord(_Record):
  types: Tuple[int, int, int]
  r_hb: float
  p_hb1: float
  p_hb2: float
  p_hb3: float
  reserved: Tuple[float, ...] = ()

  layout = (('@', '@', '@', 'r_hb', 'p_hb1', 'p_hb2', 'p_hb3'),)
  required_columns = (7,)


_GLOBAL_FIELDS = (
    ('p_boc1', 0), ('p_boc2', 1), ('p_coa2', 2), ('p_trip4', 3),
    ('p_trip3', 4), ('k_c2', 5), ('p_ovun6', 6), ('p_trip2', 7),
    ('p_ovun7', 8), ('p_ovun8', 9), ('p_trip1', 10), ('swa', 11),
    ('swb', 12), ('p_val6', 14), ('p_lp1', 15), ('p_val9', 16),
    ('p_val10', 17), ('p_pen2', 19), ('p_pen3', 20), ('p_pen4', 21),
    ('p_tor2', 23), ('p_tor3', 24), ('p_tor4', 25), ('p_cot2', 27),
    ('p_vdw1', 28), ('cutoff', 29), ('p_coa4', 30), ('p_ovun4', 31),
    ('p_ovun3', 32), ('p_val8', 33), ('p_coa3', 38),
)


@dataclasses.dataclass
class GlobalParams(object):
  """General parameters of a force field.

  `swa`/`swb` are the lower and upper taper radii, `cutoff` the bond order
  cutoff (the file stores it multiplied by 100). `reserved` holds the unused
  values at `RESERVED_GLOBAL_INDICES`, `extra` any values past index 38.
  """
  p_boc1: float
  p_boc2: float
  p_coa2: float
  p_trip4: float
  p_trip3: float
  k_c2: float
  p_ovun6: float
  p_trip2: float
  p_ovun7: float
  p_ovun8: float
  p_trip1: float
  swa: float
  swb: float
  p_val6: float
  p_lp1: float
  p_val9: float
  p_val10: float
  p_pen2: float
  p_pen3: float
  p_pen4: float
  p_tor2: float
  p_tor3: float
  p_tor4: float
  p_cot2: float
  p_vdw1: float
  cutoff: float
  p_coa4: float
  p_ovun4: float
  p_ovun3: float
  p_val8: float
  p_coa3: float
  reserved: Tuple[float, ...] = (0.0,) * len(RESERVED_GLOBAL_INDICES)
  extra: Tuple[float, ...] = ()

  @classmethod
  def from_values(cls, values: Sequence[float]) -> 'GlobalParams':
    if len(values) < NUM_GLOBAL_PARAMS:
      raise ValueError(f'{NUM_GLOBAL_PARAMS} general parameters are needed, '
                       f'got {len(values)}')
    kwargs = {name: float(values[index]) for name, index in _GLOBAL_FIELDS}
    kwargs['cutoff'] *= 0.01
    kwargs['reserved'] = tuple(float(values[i])
                               for i in RESERVED_GLOBAL_INDICES)
    kwargs['extra'] = tuple(float(v) for v in values[NUM_GLOBAL_PARAMS:])
    return cls(**kwargs)


class Section(enum.Enum):
  """Sections of a parameter file in the order they appear.

  Each member knows its label, how many lines its header spans and how many
  lines make up one record.
  """
  GLOBAL = ('general parameters', 1, 1)
  ATOM = ('atom types', 4, 4)
  BOND = ('bonds', 2, 2)
  OFF_DIAGONAL = ('off-diagonal terms', 1, 1)
  ANGLE = ('valence angles', 1, 1)
  TORSION = ('torsions', 1, 1)
  HYDROGEN_BOND = ('hydrogen bonds', 1, 1)

  def __init__(self, label, header_lines, lines_per_record):
    self.label = label
    self.header_lines = header_lines
    self.lines_per_record = lines_per_record

  @property
  def record_type(self):
    return _RECORD_TYPES[self]


_RECORD_TYPES = {
    Section.GLOBAL: None,
    Section.ATOM: AtomTypeRecord,
    Section.BOND: BondTypeRecord,
    Section.OFF_DIAGONAL: OffDiagonalRecord,
    Section.ANGLE: AngleTypeRecord,
    Section.TORSION: TorsionTypeRecord,
    Section.HYDROGEN_BOND: HydrogenBondTypeRecord,
}


def _matches(pattern, key) -> bool:
  return all(p == WILDCARD or p == k for p, k in zip(pattern, key))


@dataclasses.dataclass
class ForceField(object):
  '''
  Container for ReaxFF parameters.

  Type indices are 0-based in file order. Pair and multi-body tables hold
  every declared orientation of a key, both pointing at the same record, so
  lookups are symmetric under reversal. Absent multi-body entries raise
  `ParameterLookupError` instead of reading as zero.
  '''
  global_params: GlobalParams = dataclasses.static_field()
  atom_types: Tuple[AtomTypeRecord, ...] = dataclasses.static_field()
  bond_types: frozendict = dataclasses.static_field()
  off_diagonal: frozendict = dataclasses.static_field()
  angle_types: frozendict = dataclasses.static_field()
  torsion_types: frozendict = dataclasses.static_field()
  hbond_types: frozendict = dataclasses.static_field()
  name_to_index: frozendict = dataclasses.static_field()
  # bond order threshold for valence angle terms
  cutoff2: float = dataclasses.static_field(default=1e-3)

  @property
  def num_atom_types(self) -> int:
    return len(self.atom_types)

  def _check_types(self, *types):
    for t in types:
      if not 0 <= t < self.num_atom_types:
        raise ParameterLookupError(
            f'Atom type index {t} is not defined; the force field has '
            f'{self.num_atom_types} atom types.')

  def type_index(self, name: str) -> int:
    if name not in self.name_to_index:
      raise ParameterLookupError(f'Unknown atom type name {name!r}.')
    return self.name_to_index[name]

  def atom(self, i: int) -> AtomTypeRecord:
    self._check_types(i)
    return self.atom_types[i]

  def bond(self, i: int, j: int) -> BondTypeRecord:
    self._check_types(i, j)
    return self.bond_types[(i, j)]

  def off_diagonal_term(self, i: int, j: int) -> Optional[OffDiagonalRecord]:
    self._check_types(i, j)
    return self.off_diagonal.get((i, j))

  def angle(self, i: int, j: int, k: int) -> AngleTypeRecord:
    self._check_types(i, j, k)
    try:
      return self.angle_types[(i, j, k)]
    except KeyError:
      raise ParameterLookupError(
          f'No valence angle parameters for types {(i, j, k)} '
          f'({self._names((i, j, k))}).') from None

  def hydrogen_bond(self, i: int, j: int, k: int) -> HydrogenBondTypeRecord:
    self._check_types(i, j, k)
    try:
      return self.hbond_types[(i, j, k)]
    except KeyError:
      raise ParameterLookupError(
          f'No hydrogen bond parameters for types {(i, j, k)} '
          f'({self._names((i, j, k))}).') from None

  def torsion(self, i: int, j: int, k: int, l: int) -> TorsionTypeRecord:
    """Torsion record for a type quadruple.

    An exact row wins; otherwise the matching row with the fewest wildcard
    positions is used.
    """
    key = (i, j, k, l)
    self._check_types(*key)
    if key in self.torsion_types:
      return self.torsion_types[key]
    candidates = [(pattern.count(WILDCARD), pattern)
                  for pattern in self.torsion_types
                  if _matches(pattern, key)]
    if not candidates:
      raise ParameterLookupError(
          f'No torsion parameters for types {key} ({self._names(key)}).')
    return self.torsion_types[min(candidates)[1]]

  def _names(self, types) -> str:
    return '-'.join(self.atom_types[t].name for t in types)

  @functools.cached_property
  def _atom_table(self):
    names = [f.name for f in dataclasses.fields(AtomTypeRecord)
             if f.name not in ('name', 'reserved')]
    table = {name: onp.array([getattr(a, name) for a in self.atom_types],
                             dtype=onp.float64)
             for name in names}
    table['n_lp_opt'] = onp.array([a.n_lp_opt for a in self.atom_types],
                                  dtype=onp.float64)
    return table

  @functools.cached_property
  def _pair_table(self):
    n = self.num_atom_types
    names = [f.name for f in dataclasses.fields(BondTypeRecord)
             if f.name not in ('type_i', 'type_j', 'reserved')]
    table = {name: onp.zeros((n, n), dtype=onp.float64) for name in names}
    for (i, j), record in self.bond_types.items():
      for name in names:
        table[name][i, j] = float(getattr(record, name))
    return table

  @functools.cached_property
  def _angle_table(self):
    n = self.num_atom_types
    names = [f.name for f in dataclasses.fields(AngleTypeRecord)
             if f.name not in ('types', 'reserved')]
    table = {name: onp.zeros((n, n, n), dtype=onp.float64) for name in names}
    mask = onp.zeros((n, n, n), dtype=bool)
    for key, record in self.angle_types.items():
      mask[key] = True
      for name in names:
        table[name][key] = getattr(record, name)
    return mask, table

  def atom_array(self, name: str) -> onp.ndarray:
    """Per-type values of an `AtomTypeRecord` field, shape [T]."""
    return self._atom_table[name]

  def pair_array(self, name: str) -> onp.ndarray:
    """Values of a `BondTypeRecord` field for every type pair, shape [T, T]."""
    return self._pair_table[name]

  def angle_array(self, name: str) -> onp.ndarray:
    """Values of an `AngleTypeRecord` field, zero where absent, [T, T, T]."""
    return self._angle_table[1][name]

  @property
  def angle_mask(self) -> onp.ndarray:
    """True where an angle record exists, shape [T, T, T]."""
    return self._angle_table[0]
