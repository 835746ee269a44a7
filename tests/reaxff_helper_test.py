"""Tests for reading ReaxFF parameter files."""

import math

from absl.testing import absltest
from absl.testing import parameterized

import jax
jax.config.update("jax_enable_x64", True)

from reaxff_md import test_util
from reaxff_md.reaxff.reaxff_forcefield import (WILDCARD, FileFormatError,
                                                ParameterLookupError, Section)
from reaxff_md.reaxff.reaxff_helper import (parse_force_field, tokenize,
                                            read_force_field)

# indices 12 (upper taper radius) and 29 (bond order cutoff * 100) matter
GLOBAL_VALUES = [
    50.0, 9.5469, 1.6725, 1.7224, 6.8702, 60.485, 1.0588, 4.6, 12.1176,
    13.3056, -40.0, 0.0, 10.0, 2.8793, 33.8667, 6.0891, 1.0563, 2.0384,
    6.1431, 6.929, 0.3989, 3.9954, -2.4837, 5.7796, 10.0, 1.9487, -1.2327,
    2.1645, 1.5591, 0.1, 1.7602, 0.6991, 50.0, 1.8512, 0.5, 20.0, 5.0, 0.0,
    0.7903]

OXYGEN_ATOM = """\
 O    1.2450   2.0000  15.9990   2.3890   0.1000   1.0898   1.0548   6.0000
      9.7300  13.8449   4.0000  37.5000 116.0768   8.5000   8.3122   2.0000
      0.9049   0.4056  68.0152   3.5027   0.7640   0.0021   0.9745   0.0000
     -3.5500   2.9000   1.0493   4.0000   2.9225   0.0000   0.0000   0.0000
"""

CARBON_ATOM = """\
 C    1.3817   4.0000  12.0000   1.8903   0.1838   0.6544   1.1341   4.0000
      9.7559   2.1346   4.0000  34.9350  79.5548   5.4088   6.0000   0.0000
      1.2114   0.0000 202.2908   8.9539  34.9289  13.5366   0.8563   0.0000
     -2.8983   2.5000   1.0564   4.0000   2.9663   0.0000   0.0000   0.0000
"""

OXYGEN_BOND = """\
  1  1 142.2858 145.0000  50.8293   0.2506  -0.1000   1.0000  29.7503   0.6051
         0.3451  -0.1055   9.0000   1.0000  -0.1225   5.5000   1.0000   0.0000
"""

OXYGEN_ANGLE = """\
  1  1  1  80.7324  30.4554   0.9953   0.0000   1.6310  50.0000   1.0783
"""


def single_type_file(bonds=OXYGEN_BOND, num_bonds=1, angles=OXYGEN_ANGLE,
                     num_angles=1, trailer='', atoms=OXYGEN_ATOM,
                     num_atoms=1):
  globals_ = ''.join(f'  {v:.4f} ! parameter {i}\n'
                     for i, v in enumerate(GLOBAL_VALUES))
  return (
      'Single oxygen type\n'
      f' {len(GLOBAL_VALUES)} ! Number of general parameters\n'
      + globals_ +
      f'  {num_atoms} ! Nr of atoms\n'
      '    alfa;gammavdW;valency\n'
      '    cov.r3;Elp;Heat.inc.\n'
      '    ov/un;val1;n.u.\n'
      + atoms +
      f'  {num_bonds} ! Nr of bonds\n'
      '    pbe2;pbo3;pbo4\n'
      + bonds +
      '  0 ! Nr of off-diagonal terms\n'
      f'  {num_angles} ! Nr of angles\n'
      + angles +
      '  0 ! Nr of torsions\n'
      '  0 ! Nr of hydrogen bonds\n'
      + trailer)


def two_type_file(carbon=CARBON_ATOM):
  # O is type 0 and C is type 1; there is no O-C bond or off-diagonal row.
  return single_type_file(atoms=OXYGEN_ATOM + carbon, num_atoms=2)


def line_number_of(text, fragment):
  for number, line in enumerate(text.splitlines(), start=1):
    if fragment in line:
      return number
  raise AssertionError(f'{fragment!r} not in text')


class TokenizeTest(test_util.ReaxFFTestCase):

  def test_drops_title_blank_and_comment_lines(self):
    text = 'title 1 2 3\n\n  ! only a comment\n 3 ! count\n 1.0 2.0 !x y\n'
    self.assertEqual(tokenize(text), [(4, ['3']), (5, ['1.0', '2.0'])])


class SingleTypeTest(test_util.ReaxFFTestCase):

  def test_one_type_with_explicit_bond(self):
    ff = parse_force_field(single_type_file())
    self.assertEqual(ff.num_atom_types, 1)
    self.assertEqual(ff.atom(0).name, 'O')
    self.assertEqual(ff.type_index('O'), 0)
    self.assertLen(ff.bond_types, 1)

    bond = ff.bond(0, 0)
    self.assertTrue(bond.explicit)
    # declared values survive the combination pass
    self.assertEqual(bond.de_sigma, 142.2858)
    self.assertEqual(bond.de_pi, 145.0)
    self.assertEqual(bond.p_be1, 0.2506)
    self.assertEqual(bond.p_bo1, -0.1225)
    self.assertEqual(bond.p_bo2, 5.5)
    self.assertEqual(bond.ovc, 1.0)
    self.assertEqual(bond.reserved, (1.0, 0.0))
    # combined from the one-body record
    self.assertAlmostEqual(bond.r_sigma, 1.245)
    self.assertAlmostEqual(bond.r_pipi, 0.9049)
    self.assertAlmostEqual(bond.d_ij, 0.1)
    self.assertAlmostEqual(bond.r_vdw, 2 * 2.389)
    self.assertAlmostEqual(bond.gamma, (1.0898 * 1.0898) ** -1.5)
    self.assertAlmostEqual(bond.p_boc3, 0.764)

  def test_atom_fields(self):
    atom = parse_force_field(single_type_file()).atom(0)
    self.assertEqual(atom.valency_e, 6.0)
    self.assertEqual(atom.valency_boc, 4.0)
    self.assertEqual(atom.valency_val, 4.0)
    self.assertEqual(atom.chi_eem, 8.5)
    self.assertEqual(atom.eta_eem, 8.3122)
    self.assertEqual(atom.a_core, 0.0)
    self.assertEqual(atom.reserved, (116.0768, 0.9745, 0.0, 1.0493))
    self.assertAlmostEqual(atom.n_lp_opt, 2.0)

  def test_global_params(self):
    gp = parse_force_field(single_type_file()).global_params
    self.assertEqual(gp.p_boc1, 50.0)
    self.assertEqual(gp.swb, 10.0)
    self.assertEqual(gp.p_vdw1, 1.5591)
    self.assertEqual(gp.p_coa3, 0.7903)
    self.assertAlmostEqual(gp.cutoff, 0.001)
    self.assertEqual(gp.reserved[0], 2.8793)
    self.assertEqual(gp.extra, ())

  def test_missing_angle_raises(self):
    ff = parse_force_field(single_type_file(angles='', num_angles=0))
    with self.assertRaises(ParameterLookupError):
      ff.angle(0, 0, 0)

  def test_undefined_type_raises(self):
    ff = parse_force_field(single_type_file())
    with self.assertRaises(ParameterLookupError):
      ff.bond(0, 1)
    with self.assertRaises(ParameterLookupError):
      ff.type_index('N')

  def test_duplicate_bond_keeps_first(self):
    duplicate = OXYGEN_BOND.replace('142.2858', '100.0000')
    text = single_type_file(bonds=OXYGEN_BOND + duplicate, num_bonds=2)
    with self.assertLogs(logger='absl', level='WARNING'):
      ff = parse_force_field(text)
    self.assertEqual(ff.bond(0, 0).de_sigma, 142.2858)


class MixingRuleTest(test_util.ReaxFFTestCase):

  @classmethod
  def setUpClass(cls):
    super().setUpClass()
    cls.ff = parse_force_field(two_type_file())

  def test_pair_without_rows(self):
    oc = self.ff.bond(0, 1)
    self.assertFalse(oc.explicit)
    self.assertEqual(oc.de_sigma, 0.0)
    self.assertIsNone(self.ff.off_diagonal_term(0, 1))

  @parameterized.parameters('r_sigma', 'r_pi', 'r_pipi')
  def test_arithmetic_mean(self, field):
    o, c = self.ff.atom(0), self.ff.atom(1)
    self.assertAlmostEqual(getattr(self.ff.bond(0, 1), field),
                           0.5 * (getattr(o, field) + getattr(c, field)))

  @parameterized.parameters('p_boc3', 'p_boc4', 'p_boc5', 'alpha', 'gamma_w',
                            'r_core', 'e_core', 'a_core')
  def test_geometric_mean(self, field):
    o, c = self.ff.atom(0), self.ff.atom(1)
    self.assertAlmostEqual(getattr(self.ff.bond(0, 1), field),
                           math.sqrt(getattr(o, field) * getattr(c, field)))

  def test_well_depth_radius_and_shielding(self):
    o, c = self.ff.atom(0), self.ff.atom(1)
    oc = self.ff.bond(1, 0)
    self.assertAlmostEqual(oc.d_ij, math.sqrt(0.1000 * 0.1838))
    self.assertAlmostEqual(oc.d_ij, math.sqrt(o.epsilon * c.epsilon))
    self.assertAlmostEqual(oc.r_vdw, 2 * math.sqrt(2.3890 * 1.8903))
    self.assertAlmostEqual(oc.gamma, (1.0898 * 0.6544) ** -1.5)
    self.assertAlmostEqual(oc.r_sigma, 0.5 * (1.2450 + 1.3817))

  def test_self_pairs_use_own_parameters(self):
    o, c = self.ff.atom(0), self.ff.atom(1)
    cc = self.ff.bond(1, 1)
    self.assertFalse(cc.explicit)
    self.assertAlmostEqual(cc.r_pi, c.r_pi)
    self.assertAlmostEqual(cc.r_vdw, 2 * c.r_vdw)
    self.assertTrue(self.ff.bond(0, 0).explicit)
    self.assertAlmostEqual(self.ff.bond(0, 0).alpha, o.alpha)

  def test_negative_vdw_radius_product(self):
    carbon = CARBON_ATOM.replace('12.0000   1.8903', '12.0000  -1.8903')
    ff = parse_force_field(two_type_file(carbon))
    self.assertEqual(ff.atom(1).r_vdw, -1.8903)
    self.assertEqual(ff.bond(0, 1).r_vdw, 0.0)
    self.assertAlmostEqual(ff.bond(1, 1).r_vdw, 2 * 1.8903)


class FormatErrorTest(test_util.ReaxFFTestCase):

  @parameterized.named_parameters(
      ('letters', '142.28x8'),
      ('nan', 'nan'),
      ('inf', 'inf'))
  def test_bad_number_aborts_load(self, token):
    text = single_type_file(bonds=OXYGEN_BOND.replace('142.2858', token))
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(text)
    self.assertIs(e.exception.section, Section.BOND)
    self.assertEqual(e.exception.line_number, line_number_of(text, token))

  def test_bad_number_on_second_record_line(self):
    text = single_type_file(bonds=OXYGEN_BOND.replace('-0.1225', '-0.1.25'))
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(text)
    self.assertEqual(e.exception.line_number, line_number_of(text, '-0.1.25'))

  def test_too_few_columns(self):
    short = OXYGEN_ANGLE.replace('   1.0783', '')
    text = single_type_file(angles=short)
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(text)
    self.assertIs(e.exception.section, Section.ANGLE)

  def test_type_index_out_of_range(self):
    angles = OXYGEN_ANGLE.replace('  1  1  1', '  1  2  1')
    text = single_type_file(angles=angles)
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(text)
    self.assertIs(e.exception.section, Section.ANGLE)

  def test_declared_count_too_large(self):
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(single_type_file(num_angles=2))
    self.assertIs(e.exception.section, Section.ANGLE)
    self.assertEqual(e.exception.expected, '2 lines')
    self.assertEqual(e.exception.actual, '1 lines')

  def test_declared_count_too_small(self):
    text = single_type_file(bonds=OXYGEN_BOND * 2, num_bonds=1)
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(text)
    self.assertIs(e.exception.section, Section.BOND)
    self.assertEqual(e.exception.expected, '2 lines')
    self.assertEqual(e.exception.actual, '4 lines')

  def test_general_parameter_count_too_large(self):
    text = single_type_file().replace(' 39 ! Number', ' 40 ! Number')
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(text)
    self.assertIs(e.exception.section, Section.GLOBAL)
    self.assertEqual(e.exception.expected, '40 lines')
    self.assertEqual(e.exception.actual, '39 lines')

  def test_extra_general_parameter_line(self):
    text = single_type_file().replace(
        '  1 ! Nr of atoms', '  0.5000 ! extra\n  1 ! Nr of atoms')
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(text)
    self.assertIs(e.exception.section, Section.GLOBAL)
    self.assertEqual(e.exception.expected, '39 lines')
    self.assertEqual(e.exception.actual, '40 lines')

  def test_too_few_general_parameters(self):
    text = single_type_file().replace(' 39 ! Number', ' 30 ! Number')
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(text)
    self.assertIs(e.exception.section, Section.GLOBAL)

  def test_trailing_content(self):
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(single_type_file(trailer='  1 2 3 4.0\n'))
    self.assertIs(e.exception.section, Section.HYDROGEN_BOND)

  def test_empty_file(self):
    with self.assertRaises(FileFormatError):
      parse_force_field('title only\n')

  def test_error_message_names_section_and_line(self):
    text = single_type_file(bonds=OXYGEN_BOND.replace('142.2858', 'abc'))
    with self.assertRaisesRegex(FileFormatError, 'bonds section, line'):
      parse_force_field(text)


class ForceFieldFileTest(test_util.ReaxFFTestCase):

  @classmethod
  def setUpClass(cls):
    super().setUpClass()
    cls.ff = test_util.load_test_force_field()
    with open(test_util.data_file_path('ffield_cho')) as f:
      cls.text = f.read()

  def test_counts(self):
    ff = self.ff
    self.assertEqual(ff.num_atom_types, 3)
    self.assertEqual([a.name for a in ff.atom_types], ['C', 'H', 'O'])
    self.assertLen(ff.bond_types, 9)
    self.assertLen(ff.angle_types, 27)
    self.assertTrue(all(ff.bond(i, j).explicit
                        for i in range(3) for j in range(3)))

  @parameterized.named_parameters(
      ('atoms', ' 3    ! Nr of atoms', ' 2    ! Nr of atoms', Section.ATOM),
      ('atoms_over', ' 3    ! Nr of atoms', ' 4    ! Nr of atoms',
       Section.ATOM),
      ('bonds_under', ' 6      ! Nr of bonds', ' 5      ! Nr of bonds',
       Section.BOND),
      ('bonds_over', ' 6      ! Nr of bonds', ' 7      ! Nr of bonds',
       Section.BOND),
      ('off_diagonal_under', ' 3    ! Nr of off-diagonal',
       ' 2    ! Nr of off-diagonal', Section.OFF_DIAGONAL),
      ('off_diagonal_over', ' 3    ! Nr of off-diagonal',
       ' 4    ! Nr of off-diagonal', Section.OFF_DIAGONAL),
      ('torsions_over', ' 7    ! Nr of torsions', ' 9    ! Nr of torsions',
       Section.TORSION),
  )
  def test_count_mismatch_names_section(self, old, new, section):
    self.assertIn(old, self.text)
    with self.assertRaises(FileFormatError) as e:
      parse_force_field(self.text.replace(old, new))
    self.assertIs(e.exception.section, section)

  def test_symmetric_lookups_share_records(self):
    ff = self.ff
    self.assertIs(ff.bond(0, 1), ff.bond(1, 0))
    self.assertIs(ff.bond(2, 1), ff.bond(1, 2))
    self.assertIs(ff.angle(0, 1, 2), ff.angle(2, 1, 0))
    self.assertIs(ff.hydrogen_bond(2, 1, 2), ff.hbond_types[(2, 1, 2)])
    self.assertEqual(ff.angle(0, 1, 2).types, (0, 1, 2))
    self.assertEqual(ff.angle(2, 1, 0).p_val1, 25.0)

  def test_declared_bond_fields_kept(self):
    bond = self.ff.bond(0, 0)
    self.assertEqual(bond.de_sigma, 158.2004)
    self.assertEqual(bond.p_bo1, -0.0777)
    self.assertEqual(bond.p_bo2, 6.7268)
    self.assertEqual(bond.v13cor, 1.0)

  def test_combination_rules(self):
    ff = self.ff
    c, h = ff.atom(0), ff.atom(1)
    cc = ff.bond(0, 0)
    self.assertAlmostEqual(cc.r_pi, c.r_pi)
    self.assertAlmostEqual(cc.d_ij, c.epsilon)
    ch = ff.bond(0, 1)
    self.assertAlmostEqual(ch.p_boc3, math.sqrt(c.p_boc3 * h.p_boc3))
    self.assertAlmostEqual(ch.gamma_w, math.sqrt(c.gamma_w * h.gamma_w))
    self.assertAlmostEqual(ch.gamma, (c.gamma * h.gamma) ** -1.5)
    # H has no pi radius, so the C-H pair has none either
    self.assertEqual(ch.r_pi, 0.0)
    self.assertEqual(ch.r_pipi, 0.0)

  def test_off_diagonal_overrides(self):
    ff = self.ff
    ch = ff.bond(0, 1)
    self.assertEqual(ch.d_ij, 0.1239)
    self.assertAlmostEqual(ch.r_vdw, 2 * 1.4004)
    self.assertEqual(ch.alpha, 9.8467)
    self.assertEqual(ch.r_sigma, 1.121)
    co = ff.bond(2, 0)
    self.assertEqual(co.r_pi, 1.1576)
    self.assertEqual(co.r_pipi, 1.0637)
    self.assertIs(ff.off_diagonal_term(0, 2), ff.off_diagonal_term(2, 0))
    self.assertIsNone(ff.off_diagonal_term(0, 0))

  def test_wildcard_torsions(self):
    ff = self.ff
    self.assertIn((WILDCARD, 0, 2, WILDCARD), ff.torsion_types)
    self.assertEqual(ff.torsion(0, 0, 0, 0).v2, 34.7453)
    # exact rows win over wildcard rows
    self.assertEqual(ff.torsion(1, 0, 0, 1).v2, 31.2081)
    # H-C-O-H only matches the 0-C-O-0 row, in either direction
    self.assertEqual(ff.torsion(1, 0, 2, 1).v2, 25.415)
    self.assertIs(ff.torsion(1, 0, 2, 1), ff.torsion(1, 2, 0, 1))
    self.assertEqual(ff.torsion(2, 0, 1, 2).types, (WILDCARD, 0, 1, WILDCARD))
    with self.assertRaises(ParameterLookupError):
      ff.torsion(2, 0, 0, 2)

  def test_missing_hydrogen_bond(self):
    with self.assertRaises(ParameterLookupError):
      self.ff.hydrogen_bond(0, 1, 0)

  def test_cutoff2(self):
    ff = read_force_field(test_util.data_file_path('ffield_cho'), cutoff2=0.01)
    self.assertEqual(ff.cutoff2, 0.01)
    self.assertEqual(self.ff.cutoff2, 1e-3)

  def test_dense_views(self):
    ff = self.ff
    self.assertEqual(ff.pair_array('de_sigma').shape, (3, 3))
    self.assertEqual(ff.pair_array('de_sigma')[2, 0], 158.6946)
    self.assertEqual(ff.atom_array('mass')[1], 1.008)
    self.assertTrue(ff.angle_mask.all())
    self.assertEqual(ff.angle_array('theta_00')[2, 0, 2], 77.1171)


if __name__ == '__main__':
  absltest.main()
