"""
Participant resolution: turn an action's participants spec into an ordered list.
"""

from typing import Any

from ..agents.base import Directory, Participant, Position, PositionTier
from ..observability.logging import get_logger
from .definitions import ActionDefinition, ParticipantMode, ParticipantSpec
from .errors import NoParticipantsResolved

logger = get_logger(__name__)


def infer_mode(spec: ParticipantSpec) -> ParticipantMode | None:
    """Mode to use when the spec leaves it implicit."""
    if spec.mode is not None:
        return spec.mode
    if spec.position_id and not spec.position_ids and not spec.team_ids:
        return ParticipantMode.SINGLE
    if spec.team_ids and not spec.position_ids:
        return ParticipantMode.TEAM
    if spec.position_ids and not spec.team_ids:
        return ParticipantMode.MULTIPLE
    # Union of explicit positions and team positions, or nothing at all
    return None


class ParticipantResolver:
    """Resolves positions through the directory, honoring the phase's team scope."""

    def __init__(self, directory: Directory):
        self.directory = directory

    def resolve(
        self,
        action: ActionDefinition,
        keyword_sources: dict[str, Any] | None = None,
        team_scope: list[str] | None = None,
    ) -> list[Participant]:
        spec = action.participants
        mode = infer_mode(spec)

        match mode:
            case ParticipantMode.SINGLE:
                position_id = spec.position_id or (spec.position_ids[0] if spec.position_ids else None)
                positions = self._lookup([position_id] if position_id else [])
            case ParticipantMode.MULTIPLE:
                positions = self._lookup(spec.position_ids)
            case ParticipantMode.TEAM:
                positions = self._team_positions(
                    spec.team_ids, spec.team_options.include_leaders, spec.team_options.include_members
                )
            case ParticipantMode.DYNAMIC:
                positions = self._dynamic(spec, keyword_sources or {})
            case None:
                ids = ([spec.position_id] if spec.position_id else []) + list(spec.position_ids)
                positions = self._lookup(ids) + self._team_positions(
                    spec.team_ids, spec.team_options.include_leaders, spec.team_options.include_members
                )

        if team_scope and mode is not ParticipantMode.DYNAMIC:
            positions = [p for p in positions if p.team_id is None or p.team_id in team_scope]

        participants = _dedupe(positions)
        if not participants:
            raise NoParticipantsResolved(
                f"No participants resolved for action '{action.label}'",
                action_id=action.id,
                mode=mode.value if mode else "union",
            )
        logger.debug(
            "Participants resolved",
            action_id=action.id,
            participants=[p.id for p in participants],
        )
        return participants

    def _lookup(self, position_ids: list[str]) -> list[Position]:
        positions = []
        for position_id in position_ids:
            position = self.directory.get_position(position_id)
            if position is None:
                logger.warning("Unknown position in participants spec", position_id=position_id)
                continue
            positions.append(position)
        return positions

    def _team_positions(
        self, team_ids: list[str], include_leaders: bool, include_members: bool
    ) -> list[Position]:
        positions: list[Position] = []
        for team_id in team_ids:
            team = self.directory.get_team(team_id)
            if team is None:
                logger.warning("Unknown team in participants spec", team_id=team_id)
                continue
            ids: list[str] = []
            if include_leaders:
                ids.extend(team.leader_ids)
            if include_members:
                ids.extend(team.member_ids)
            if not team.leader_ids and not team.member_ids:
                for position in self.directory.get_all_positions():
                    if position.team_id != team_id:
                        continue
                    is_leader = position.tier in (PositionTier.LEADER, PositionTier.EXECUTIVE)
                    if (is_leader and include_leaders) or (not is_leader and include_members):
                        ids.append(position.id)
            positions.extend(self._lookup(ids))
        return positions

    def _dynamic(self, spec: ParticipantSpec, keyword_sources: dict[str, Any]) -> list[Position]:
        config = spec.dynamic
        text = str(keyword_sources.get(config.keyword_source) or "").lower()
        if config.candidate_position_ids:
            candidates = self._lookup(config.candidate_position_ids)
        else:
            candidates = self.directory.get_all_positions()

        selected: list[Position] = []
        for position in candidates:
            if len(selected) >= config.max_smes:
                break
            if text and any(kw.lower() in text for kw in position.expertise if kw):
                selected.append(position)

        if not selected and config.fallback_position:
            logger.info(
                "No expertise match, using fallback position",
                fallback=config.fallback_position,
            )
            selected = self._lookup([config.fallback_position])
        return selected


def _dedupe(positions: list[Position]) -> list[Participant]:
    seen: set[str] = set()
    participants = []
    for position in positions:
        key = position.agent_id or position.id
        if key in seen:
            continue
        seen.add(key)
        participants.append(Participant(position))
    return participants
