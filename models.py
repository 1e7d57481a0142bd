from pydantic import BaseModel, ConfigDict, Field
from typing import Any

# Wire format uses camelCase keys; DopaLAN hosts and launchers already speak it.

class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class MatchRegisterRequest(WireModel):
    # Validated by MatchRegistry.register
    host_name: Any = Field(None, alias="hostName")
    proxy_address: Any = Field(None, alias="proxyAddress")
    proxy_port: Any = Field(None, alias="proxyPort")
    map: Any = None
    max_players: Any = Field(None, alias="maxPlayers")

class MatchRegisterResponse(WireModel):
    id: str
    message: str
    proxy_url: str = Field(alias="proxyUrl")

class MatchIdRequest(WireModel):
    id: Any = None  # Unknown or non-string ids answer 404

class HeartbeatResponse(WireModel):
    ok: bool = True
    message: str = "Heartbeat OK"

class UnregisterResponse(WireModel):
    ok: bool = True

class MatchInfo(WireModel):
    id: str
    host_name: str = Field(alias="hostName")
    proxy_address: str = Field(alias="proxyAddress")
    proxy_port: int = Field(alias="proxyPort")
    proxy_url: str = Field(alias="proxyUrl")
    map: str
    max_players: int = Field(alias="maxPlayers")
    players_connected: int = Field(alias="playersConnected")
    age: int  # Minutes since registration
    is_recent: bool = Field(alias="isRecent")

class MatchListResponse(WireModel):
    matches: list[MatchInfo]
    total: int
    timestamp: int  # Epoch milliseconds

class HealthResponse(WireModel):
    status: str
    uptime: str
    matches: int
    active: int

class StatsResponse(WireModel):
    total_matches_ever: int = Field(alias="totalMatchesEver")
    active_matches: int = Field(alias="activeMatches")
    uptime: float  # Seconds
