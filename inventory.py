from __future__ import annotations

import re
import logging
from functools import cached_property
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from utils import timestamp
from constants import CampaignStatus

if TYPE_CHECKING:
    from collections import abc

    from client import RemoteClient
    from constants import JsonType


logger = logging.getLogger("DropsBot")


class Game:
    def __init__(self, data: JsonType):
        self.id: str = str(data["id"])
        self.name: str = data.get("displayName") or data["name"]
        if data.get("slug"):
            self.slug = data["slug"]

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"Game({self.id}, {self.name})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, self.__class__):
            return self.id == other.id
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.id)

    @cached_property
    def slug(self) -> str:
        """
        Directory slug of the game, derived from the name when the API doesn't provide one.
        """
        # apostrophes vanish, any other run of symbols becomes a single dash
        return re.sub(r"\W+", "-", self.name.lower().replace("'", "")).strip("-")


class Campaign:
    """
    Immutable snapshot of a drop campaign, as reported by the campaigns dashboard.
    """
    __slots__ = ("id", "name", "status", "game", "linked", "starts_at", "ends_at")

    def __init__(self, data: JsonType):
        self.id: str = data["id"]
        self.name: str = data["name"]
        self.status: CampaignStatus = CampaignStatus.parse(data["status"])
        self.game: Game = Game(data["game"])
        self.linked: bool = bool(data.get("self") and data["self"]["isAccountConnected"])
        self.starts_at: datetime | None = (
            timestamp(data["startAt"]) if data.get("startAt") else None
        )
        self.ends_at: datetime = timestamp(data["endAt"])

    def __repr__(self) -> str:
        return f"Campaign({self.game!s}, {self.name}, {self.status.value})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, self.__class__):
            return self.id == other.id
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def full_name(self) -> str:
        return f"{self.game.name} {self.name}"

    @property
    def active(self) -> bool:
        return self.status is CampaignStatus.ACTIVE


class Benefit:
    __slots__ = ("id", "name")

    def __init__(self, data: JsonType):
        benefit: JsonType = data["benefit"]
        self.id: str = benefit["id"]
        self.name: str = benefit["name"]


class Drop:
    def __init__(self, campaign_id: str, data: JsonType):
        self.id: str = data["id"]
        self.name: str = data.get("name") or self.id
        self.campaign_id: str = campaign_id
        self.benefits: list[Benefit] = [Benefit(b) for b in (data.get("benefitEdges") or [])]
        self.starts_at: datetime = timestamp(data["startAt"])
        self.ends_at: datetime = timestamp(data["endAt"])
        self.required_minutes: int = data["requiredMinutesWatched"]
        # progress is only reported once the user has started on the drop
        progress: JsonType = data.get("self") or {}
        self.current_minutes: int = progress.get("currentMinutesWatched") or 0
        self.claim_id: str | None = progress.get("dropInstanceID")
        self.is_claimed: bool = bool(progress.get("isClaimed"))

    def __repr__(self) -> str:
        state = "claimed" if self.is_claimed else f"{self.current_minutes}/{self.required_minutes}"
        return f"Drop({self.reward_name}, {state})"

    @property
    def reward_name(self) -> str:
        if self.benefits:
            return self.benefits[0].name
        return self.name

    @property
    def ready_to_claim(self) -> bool:
        return self.current_minutes >= self.required_minutes

    def is_running(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.starts_at <= now <= self.ends_at

    async def claim(self, client: RemoteClient) -> bool:
        """
        Claims the reward of this drop. Returns True if the drop ended up claimed.
        """
        if self.is_claimed:
            return True
        logger.info(f"Claiming drop: {self.reward_name}")
        if self.claim_id is None:
            self.claim_id = await client.generate_claim_id(self.campaign_id, self.id)
        self.is_claimed = await client.claim_drop(self.claim_id)
        if self.is_claimed:
            logger.info(f"Claimed drop: {self.reward_name}")
        else:
            logger.error(f"Claiming drop {self.id} may have failed, it stays unclaimed")
        return self.is_claimed


class CampaignDetails:
    """
    Extended campaign information: the drops and the channel allow-list, if any.
    """
    def __init__(self, data: JsonType):
        self.id: str = data["id"]
        self.drops: list[Drop] = [
            Drop(self.id, drop_data) for drop_data in (data.get("timeBasedDrops") or [])
        ]
        self.allowed_channels: set[str] | None = None
        allowed: JsonType | None = data.get("allow")
        if allowed and allowed.get("isEnabled", True) and allowed.get("channels"):
            self.allowed_channels = {str(c["id"]) for c in allowed["channels"]}

    def allows(self, broadcaster_id: str) -> bool:
        return self.allowed_channels is None or broadcaster_id in self.allowed_channels


class Inventory:
    """
    Snapshot of the user's drops inventory.

    `in_progress` maps drop IDs to drops of campaigns with progress made,
    `claimed_benefits` maps benefit IDs to the time they were last awarded at.
    """
    def __init__(self, data: JsonType):
        self.in_progress: dict[str, Drop] = {}
        for campaign_data in (data.get("dropCampaignsInProgress") or []):
            for drop_data in (campaign_data.get("timeBasedDrops") or []):
                drop = Drop(campaign_data["id"], drop_data)
                self.in_progress[drop.id] = drop
        self.claimed_benefits: dict[str, datetime] = {
            b["id"]: timestamp(b["lastAwardedAt"]) for b in (data.get("gameEventDrops") or [])
        }

    def get_drop(self, drop_id: str, campaign_id: str | None = None) -> Drop | None:
        drop = self.in_progress.get(drop_id)
        if drop is not None and campaign_id is not None and drop.campaign_id != campaign_id:
            return None
        return drop

    def is_drop_claimed(self, drop: Drop) -> bool:
        # campaigns with progress made report the claim status directly
        if (inventory_drop := self.in_progress.get(drop.id)) is not None:
            return inventory_drop.is_claimed
        if not drop.benefits:
            return False
        # Otherwise, we either haven't made any progress towards the campaign yet,
        # or everything from it has been claimed already. There's no way to confirm
        # the latter directly, so assume a reward of the same benefit awarded after
        # the drop has started means the drop was claimed.
        last_awarded: datetime | None = self.claimed_benefits.get(drop.benefits[0].id)
        if last_awarded is None:
            return False
        return last_awarded > drop.starts_at

    def first_unclaimed_drop(
        self, drops: abc.Iterable[Drop], now: datetime | None = None
    ) -> Drop | None:
        now = now or datetime.now(timezone.utc)
        for drop in drops:
            if self.is_drop_claimed(drop):
                continue
            if not drop.is_running(now):
                # either already ended, or not started yet
                continue
            return drop
        return None
