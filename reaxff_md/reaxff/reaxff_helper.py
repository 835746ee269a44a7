"""
Contains helper functions to read ReaxFF parameter files.

The file is read section by section. Every section reader takes the
remaining lines and a cursor and returns the parsed records together with the
advanced cursor, so the parser keeps no state between sections.
"""

import math
from typing import List, Sequence, Tuple

from absl import logging
from frozendict import frozendict

from reaxff_md import dataclasses
from reaxff_md.reaxff.reaxff_forcefield import (
    BondTypeRecord, FileFormatError, ForceField, GlobalParams, Section,
    WILDCARD, _RecordError)

# A parameter file line with its 1-based physical line number and the tokens
# in front of any "!" comment.
Line = Tuple[int, List[str]]

# bond record fields combined from the two one-body records
ARITHMETIC_MEAN_FIELDS = ('r_sigma', 'r_pi', 'r_pipi')
GEOMETRIC_MEAN_FIELDS = ('p_boc3', 'p_boc4', 'p_boc5', 'd_ij', 'alpha',
                         'gamma_w', 'r_core', 'e_core', 'a_core')
# AtomTypeRecord stores the vdW well depth as `epsilon`
_ATOM_FIELD = {'d_ij': 'epsilon'}


def tokenize(text: str) -> List[Line]:
  """Splits a parameter file into numbered token lines.

  The first line is a free-form title and is dropped, as are blank and
  comment-only lines.
  """
  lines = []
  for number, raw in enumerate(text.splitlines()[1:], start=2):
    tokens = raw.split('!', 1)[0].split()
    if tokens:
      lines.append((number, tokens))
  return lines


def _is_data_line(line: Line) -> bool:
  # Section headers carry a single count in front of their comment.
  return len(line[1]) > 1


def _count_data_lines(lines: Sequence[Line], cursor: int) -> int:
  count = 0
  while cursor + count < len(lines) and _is_data_line(lines[cursor + count]):
    count += 1
  return count


def _is_number(token: str) -> bool:
  try:
    float(token)
  except ValueError:
    return False
  return True


def _starts_atom_header(lines: Sequence[Line], cursor: int) -> bool:
  """Whether `cursor` sits on the atom section header.

  The header is a lone integer count followed by descriptive lines that do
  not start with a number.
  """
  header = lines[cursor:cursor + Section.ATOM.header_lines]
  if len(header) < Section.ATOM.header_lines:
    return False
  tokens = header[0][1]
  if len(tokens) != 1 or not tokens[0].isdigit():
    return False
  return not any(_is_number(t[0]) for _, t in header[1:])


def _count_global_lines(lines: Sequence[Line], cursor: int) -> int:
  # General parameters are the single token lines in front of the atom
  # header, which is itself single token lines up to the first atom record.
  end = cursor
  while end < len(lines) and not _is_data_line(lines[end]):
    end += 1
  return max(end - cursor - Section.ATOM.header_lines, 0)


def _read_header(lines: Sequence[Line],
                 cursor: int,
                 section: Section) -> Tuple[int, int]:
  """Reads the declared record count of a section.

  Returns:
    The count and the cursor positioned on the first record line.
  """
  if cursor >= len(lines):
    raise FileFormatError('file ends before the section header', section,
                          expected=f'{section.label} header',
                          actual='end of file')
  number, tokens = lines[cursor]
  try:
    count = int(tokens[0]) if tokens else -1
  except ValueError:
    raise FileFormatError(
        'section header does not start with a record count', section,
        number, expected='integer count', actual=tokens[0]) from None
  if count < 0:
    raise FileFormatError('invalid record count', section, number,
                          expected='non-negative integer', actual=count)
  if cursor + section.header_lines > len(lines):
    raise FileFormatError('file ends inside the section header', section,
                          number)
  return count, cursor + section.header_lines


def parse_global_section(lines: Sequence[Line],
                         cursor: int) -> Tuple[GlobalParams, int]:
  section = Section.GLOBAL
  count, cursor = _read_header(lines, cursor, section)
  if cursor + count > len(lines):
    raise FileFormatError('declared count exceeds the remaining lines',
                          section, lines[cursor - 1][0], expected=count,
                          actual=len(lines) - cursor)
  if not _starts_atom_header(lines, cursor + count):
    raise FileFormatError(
        f'{count} general parameters declared but the section holds a '
        f'different number of lines', section, lines[cursor - 1][0],
        expected=f'{count} lines',
        actual=f'{_count_global_lines(lines, cursor)} lines')
  values = []
  for number, tokens in lines[cursor:cursor + count]:
    if not tokens:
      raise FileFormatError('missing value', section, number)
    try:
      value = float(tokens[0])
    except ValueError:
      raise FileFormatError(f'cannot read {tokens[0]!r} as a number',
                            section, number) from None
    if not math.isfinite(value):
      raise FileFormatError(f'non-finite value {tokens[0]!r}', section,
                            number)
    values.append(value)
  try:
    global_params = GlobalParams.from_values(values)
  except ValueError as e:
    raise FileFormatError(str(e), section, lines[cursor - 1][0],
                          expected='at least 39 values', actual=count) from e
  return global_params, cursor + count


def parse_section(lines: Sequence[Line],
                  cursor: int,
                  section: Section,
                  num_atom_types: int) -> Tuple[list, int]:
  """Parses the records of one section.

  Args:
    lines: tokenized lines of the whole file.
    cursor: index of the section header in `lines`.
    section: which section starts at `cursor`.
    num_atom_types: number of declared atom types, used to validate type
      references. Ignored for the atom section.

  Returns:
    The records in file order and the cursor past the section.
  """
  header_number = lines[cursor][0] if cursor < len(lines) else None
  count, cursor = _read_header(lines, cursor, section)
  per_record = section.lines_per_record
  expected = count * per_record
  available = _count_data_lines(lines, cursor)
  if available != expected:
    relation = 'fewer' if available < expected else 'more'
    raise FileFormatError(
        f'{count} records declared but the section holds {relation} lines',
        section, header_number, expected=f'{expected} lines',
        actual=f'{available} lines')

  record_type = section.record_type
  records = []
  for start in range(cursor, cursor + expected, per_record):
    record_lines = lines[start:start + per_record]
    for (number, tokens), required in zip(record_lines,
                                          record_type.required_columns):
      if len(tokens) < required:
        raise FileFormatError('too few columns', section, number,
                              expected=f'{required} columns',
                              actual=f'{len(tokens)} columns')
    try:
      records.append(record_type.from_lines([t for _, t in record_lines],
                                            num_atom_types))
    except _RecordError as e:
      raise FileFormatError(str(e), section,
                            record_lines[e.offset][0]) from e
  return records, cursor + expected


def _symmetric_table(records, key_fn, section: Section) -> frozendict:
  """Stores every record under its key and the reversed key.

  Both orientations share one record instance. Repeated keys keep the first
  occurrence.
  """
  table = {}
  for record in records:
    key = key_fn(record)
    if key in table:
      logging.warning('Duplicate %s entry for types %s is ignored.',
                      section.label, key)
      continue
    table[key] = record
    table.setdefault(tuple(reversed(key)), record)
  return frozendict(table)


def _combine(atom_i, atom_j, field: str) -> float:
  name = _ATOM_FIELD.get(field, field)
  a = getattr(atom_i, name)
  b = getattr(atom_j, name)
  if field in ARITHMETIC_MEAN_FIELDS:
    return 0.5 * (a + b) if a > 0 and b > 0 else 0.0
  return math.sqrt(a * b) if a * b > 0 else 0.0


def fill_off_diag(atom_types, bond_types, off_diagonal) -> frozendict:
  """Completes the pair table from one-body parameters.

  Every ordered pair of atom types receives a `BondTypeRecord`. Fields owned
  by the one-body side are recomputed with the standard mixing rules;
  declared bond fields are kept as read. Positive off-diagonal values then
  replace the mixed vdW and radius values.
  """
  n = len(atom_types)
  table = {}
  for i in range(n):
    for j in range(i, n):
      atom_i, atom_j = atom_types[i], atom_types[j]
      base = bond_types.get((i, j))
      if base is None:
        base = BondTypeRecord(type_i=i, type_j=j, explicit=False)
      combined = {f: _combine(atom_i, atom_j, f)
                  for f in ARITHMETIC_MEAN_FIELDS + GEOMETRIC_MEAN_FIELDS}
      r_vdw_ij = atom_i.r_vdw * atom_j.r_vdw
      combined['r_vdw'] = 2.0 * math.sqrt(r_vdw_ij) if r_vdw_ij > 0 else 0.0
      gamma_ij = atom_i.gamma * atom_j.gamma
      combined['gamma'] = gamma_ij ** -1.5 if gamma_ij > 0 else 0.0

      off = off_diagonal.get((i, j))
      if off is not None:
        if off.d_ij > 0:
          combined['d_ij'] = off.d_ij
        if off.r_vdw > 0:
          combined['r_vdw'] = 2.0 * off.r_vdw
        if off.alpha > 0:
          combined['alpha'] = off.alpha
        for field in ARITHMETIC_MEAN_FIELDS:
          value = getattr(off, field)
          if value > 0 and combined[field] > 0:
            combined[field] = value

      record = dataclasses.replace(base, **combined)
      table[(i, j)] = record
      table[(j, i)] = record
  return frozendict(table)


def parse_force_field(text: str, cutoff2: float = 1e-3) -> ForceField:
  """Builds a `ForceField` from the contents of a ReaxFF parameter file.

  Args:
    text: the full parameter file.
    cutoff2: bond order threshold used by the valence angle terms.

  Returns:
    An immutable `ForceField`.

  Raises:
    FileFormatError: if any section is malformed. Nothing is returned for a
      partially read file.
  """
  lines = tokenize(text)
  cursor = 0
  global_params, cursor = parse_global_section(lines, cursor)
  atom_types, cursor = parse_section(lines, cursor, Section.ATOM, 0)
  num_atom_types = len(atom_types)

  parsed = {}
  previous = Section.ATOM
  for section in (Section.BOND, Section.OFF_DIAGONAL, Section.ANGLE,
                  Section.TORSION, Section.HYDROGEN_BOND):
    parsed[section], cursor = parse_section(lines, cursor, section,
                                            num_atom_types)
    previous = section

  if cursor < len(lines):
    number, tokens = lines[cursor]
    raise FileFormatError(
        'unexpected content after the last section', previous, number,
        expected='end of file', actual=' '.join(tokens))

  name_to_index = {}
  for index, atom in enumerate(atom_types):
    if atom.name in name_to_index:
      logging.warning('Atom type name %s is declared more than once; '
                      'lookups by name use the first one.', atom.name)
      continue
    name_to_index[atom.name] = index

  bond_types = _symmetric_table(parsed[Section.BOND],
                                lambda r: (r.type_i, r.type_j), Section.BOND)
  off_diagonal = _symmetric_table(parsed[Section.OFF_DIAGONAL],
                                  lambda r: (r.type_i, r.type_j),
                                  Section.OFF_DIAGONAL)
  angle_types = _symmetric_table(parsed[Section.ANGLE], lambda r: r.types,
                                 Section.ANGLE)
  torsion_types = _symmetric_table(parsed[Section.TORSION],
                                   lambda r: r.types, Section.TORSION)
  hbond_types = _symmetric_table(parsed[Section.HYDROGEN_BOND],
                                 lambda r: r.types, Section.HYDROGEN_BOND)

  force_field = ForceField(
      global_params=global_params,
      atom_types=tuple(atom_types),
      bond_types=fill_off_diag(atom_types, bond_types, off_diagonal),
      off_diagonal=off_diagonal,
      angle_types=angle_types,
      torsion_types=torsion_types,
      hbond_types=hbond_types,
      name_to_index=frozendict(name_to_index),
      cutoff2=cutoff2)

  num_wildcards = sum(1 for key in torsion_types if WILDCARD in key)
  logging.info('Read force field with %d atom types, %d bonds, %d '
               'off-diagonal terms, %d angles, %d torsions (%d wildcard '
               'keys) and %d hydrogen bonds.',
               num_atom_types, len(parsed[Section.BOND]),
               len(parsed[Section.OFF_DIAGONAL]), len(parsed[Section.ANGLE]),
               len(parsed[Section.TORSION]), num_wildcards,
               len(parsed[Section.HYDROGEN_BOND]))
  return force_field


def read_force_field(force_field_file: str,
                     cutoff2: float = 1e-3) -> ForceField:
  """Reads a ReaxFF parameter file from disk. See `parse_force_field`."""
  with open(force_field_file, 'r') as f:
    text = f.read()
  return parse_force_field(text, cutoff2=cutoff2)
