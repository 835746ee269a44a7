"""
ReaxFF parameter files and energy terms.
"""
from reaxff_md.reaxff.reaxff_forcefield import (
    WILDCARD, AngleTypeRecord, AtomTypeRecord, BondTypeRecord,
    FileFormatError, ForceField, GlobalParams, HydrogenBondTypeRecord,
    OffDiagonalRecord, ParameterLookupError, PreconditionError, Section,
    TorsionTypeRecord)
from reaxff_md.reaxff.reaxff_helper import parse_force_field, read_force_field
from reaxff_md.reaxff.reaxff_interactions import Atoms, atoms_from_names
from reaxff_md.reaxff.reaxff_energy import (
    ALL_TERMS, DEFAULT_TERMS, BondOrders, Taper, bond_energy,
    c2_correction, calculate_bond_orders, calculate_eem_charges,
    calculate_reaxff_energy, coalition_energy, conjugation_energy,
    coulomb_interaction, hydrogen_bond_interaction, lone_pair_energy,
    over_coordination, penalty_energy, reaxff_energy_fn, taper,
    taper_coefficients, torsion_energy, valence_energy,
    van_der_waals_interaction)
