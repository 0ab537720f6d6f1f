"""Built-in rule set used when no database rule source is configured."""

from crewboard.models.entities import ResourceType as R, RowType
from crewboard.models.rules import DropRule, MagnetInteractionRule, RuleTables

OPERATED_EQUIPMENT = (
    R.ROLLER,
    R.EXCAVATOR,
    R.SWEEPER,
    R.MILLING_MACHINE,
    R.DOZER,
    R.PAYLOADER,
    R.SKIDSTEER,
    R.GRADER,
)

DEFAULT_MAGNET_RULES = [
    MagnetInteractionRule(R.OPERATOR, R.PAVER, can_attach=True, is_required=True, max_count=1),
    MagnetInteractionRule(R.LABORER, R.PAVER, can_attach=True, max_count=2, required_credentials=("screwman",)),
    *[
        MagnetInteractionRule(R.OPERATOR, equipment, can_attach=True, is_required=True, max_count=1)
        for equipment in OPERATED_EQUIPMENT
    ],
    MagnetInteractionRule(R.DRIVER, R.TRUCK, can_attach=True, is_required=True, max_count=1),
    MagnetInteractionRule(R.PRIVATE_DRIVER, R.TRUCK, can_attach=True, max_count=1),
    MagnetInteractionRule(R.LABORER, R.TRUCK, can_attach=True, max_count=1, required_credentials=("CDL",)),
]

DEFAULT_DROP_RULES = [
    DropRule(RowType.FORMAN, frozenset({R.FOREMAN}), capacity=1),
    DropRule(RowType.EQUIPMENT, frozenset({
        R.PAVER, R.ROLLER, R.EXCAVATOR, R.MILLING_MACHINE, R.DOZER,
        R.PAYLOADER, R.SKIDSTEER, R.GRADER, R.EQUIPMENT, R.OPERATOR, R.LABORER,
    })),
    DropRule(RowType.SWEEPER, frozenset({R.SWEEPER, R.OPERATOR})),
    DropRule(RowType.TACK, frozenset({R.TRUCK, R.DRIVER, R.PRIVATE_DRIVER, R.LABORER})),
    DropRule(RowType.MPT, frozenset({R.TRUCK, R.DRIVER, R.LABORER, R.STRIPER})),
    DropRule(RowType.CREW, frozenset({R.LABORER, R.STRIPER, R.FOREMAN})),
    DropRule(RowType.TRUCKS, frozenset({R.TRUCK, R.DRIVER, R.PRIVATE_DRIVER, R.LABORER})),
]


def default_rule_tables() -> RuleTables:
    return RuleTables.build(DEFAULT_MAGNET_RULES, DEFAULT_DROP_RULES)
