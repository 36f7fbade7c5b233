"""Proposal, hierarchy and fallback assembly.

StructureAssembler is the entry point: it classifies every certificate and
delegates to the proposal, hierarchy and fallback builders.
"""

from commission_builder.services.assembly.fallback_builder import FallbackAssignmentBuilder
from commission_builder.services.assembly.hierarchy_assembler import (
    HierarchyAssembler,
    MappingScheduleResolver,
    ScheduleResolver,
)
from commission_builder.services.assembly.proposal_assembler import ProposalAssembler
from commission_builder.services.assembly.structure_assembler import StructureAssembler

__all__ = [
    "FallbackAssignmentBuilder",
    "HierarchyAssembler",
    "MappingScheduleResolver",
    "ProposalAssembler",
    "ScheduleResolver",
    "StructureAssembler",
]
