import aiohttp
import asyncio
import logging
from typing import Optional, List, Dict, Any
from dataclasses import dataclass

logger = logging.getLogger(__name__)

@dataclass
class MatchServerConfig:
    """Configuration for the DopaLAN match server connection"""
    url: str = "http://localhost:3000"  # Match server URL
    heartbeat_interval: int = 30  # Seconds between heartbeats, below the 30s "recent" window
    timeout: int = 10  # Request timeout
    retry_attempts: int = 3  # Number of retry attempts
    retry_delay: int = 2  # Seconds between retries

class MatchServerClient:
    """Client a game host uses to advertise its match"""

    def __init__(self, config: MatchServerConfig):
        self.config = config
        self.session: Optional[aiohttp.ClientSession] = None
        self.match_id: Optional[str] = None
        self.heartbeat_task: Optional[asyncio.Task] = None
        self._running = False

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    async def connect(self):
        """Initialize HTTP session"""
        if self.session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout)
            self.session = aiohttp.ClientSession(timeout=timeout)
            logger.info(f"Connected to match server: {self.config.url}")

    async def disconnect(self):
        """Stop heartbeat, unregister the match and close the HTTP session"""
        if self.heartbeat_task:
            await self.stop_heartbeat()

        if self.match_id:
            await self.unregister_match()

        if self.session:
            await self.session.close()
            self.session = None
            logger.info("Disconnected from match server")

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        retry: bool = True
    ) -> Optional[Dict[str, Any]]:
        """Make HTTP request with retry logic"""
        if not self.session:
            await self.connect()

        url = f"{self.config.url}{endpoint}"
        attempts = self.config.retry_attempts if retry else 1

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            try:
                async with self.session.request(method, url, json=data) as response:
                    if response.status == 200:
                        return await response.json()
                    elif response.status == 404:
                        logger.warning(f"Resource not found: {endpoint}")
                        return None
                    elif response.status == 429:
                        logger.warning("Rate limit exceeded")
                        if not last_attempt:
                            await asyncio.sleep(self.config.retry_delay * 2)
                            continue
                        return None
                    elif response.status >= 500:
                        error_text = await response.text()
                        logger.error(f"Request failed: {response.status} - {error_text}")
                        if not last_attempt:
                            await asyncio.sleep(self.config.retry_delay)
                            continue
                        return None
                    else:
                        # Client errors will not succeed on retry
                        error_text = await response.text()
                        logger.error(f"Request rejected: {response.status} - {error_text}")
                        return None

            except asyncio.TimeoutError:
                logger.error(f"Request timeout: {endpoint}")
                if not last_attempt:
                    await asyncio.sleep(self.config.retry_delay)
                    continue
                return None
            except aiohttp.ClientError as e:
                logger.error(f"Request error: {e}")
                if not last_attempt:
                    await asyncio.sleep(self.config.retry_delay)
                    continue
                return None

        return None

    async def register_match(
        self,
        host_name: str,
        proxy_address: str,
        proxy_port: int,
        map_name: str,
        max_players: Optional[int] = None
    ) -> Optional[str]:
        """
        Register a match with the match server

        Returns:
            match id if successful, None otherwise
        """
        data = {
            "hostName": host_name,
            "proxyAddress": proxy_address,
            "proxyPort": proxy_port,
            "map": map_name
        }
        if max_players is not None:
            data["maxPlayers"] = max_players

        logger.info(f"Registering match: {host_name} on {map_name} at {proxy_address}:{proxy_port}")
        response = await self._make_request("POST", "/api/matches/register", data)

        if response and "id" in response:
            self.match_id = response["id"]
            logger.info(f"Match registered with ID: {self.match_id}")
            return self.match_id

        logger.error("Failed to register match")
        return None

    async def unregister_match(self, match_id: Optional[str] = None) -> bool:
        """
        Unregister a match

        Args:
            match_id: Match ID to unregister (uses stored ID if not provided)

        Returns:
            True if successful
        """
        match_id = match_id or self.match_id
        if not match_id:
            logger.warning("No match ID to unregister")
            return False

        logger.info(f"Unregistering match: {match_id}")
        response = await self._make_request(
            "POST",
            "/api/matches/unregister",
            {"id": match_id},
            retry=False
        )

        if response and response.get("ok"):
            if match_id == self.match_id:
                self.match_id = None
            logger.info("Match unregistered successfully")
            return True

        return False

    async def send_heartbeat(self, match_id: Optional[str] = None) -> bool:
        """Send a single heartbeat; True if the server still knows the match"""
        match_id = match_id or self.match_id
        if not match_id:
            logger.warning("No match ID for heartbeat")
            return False

        response = await self._make_request(
            "POST", "/api/matches/heartbeat", {"id": match_id}, retry=False
        )
        return bool(response and response.get("ok"))

    async def heartbeat_loop(self, match_id: Optional[str] = None):
        """Background task that sends periodic heartbeats"""
        match_id = match_id or self.match_id
        if not match_id:
            logger.error("No match ID for heartbeat loop")
            return

        self._running = True
        logger.info(f"Starting heartbeat loop (interval: {self.config.heartbeat_interval}s)")

        while self._running:
            try:
                success = await self.send_heartbeat(match_id)
                if not success:
                    logger.warning("Heartbeat failed")

                await asyncio.sleep(self.config.heartbeat_interval)

            except asyncio.CancelledError:
                logger.info("Heartbeat loop cancelled")
                break
            except Exception as e:
                logger.error(f"Error in heartbeat loop: {e}")
                await asyncio.sleep(self.config.heartbeat_interval)

        logger.info("Heartbeat loop stopped")

    async def start_heartbeat(self, match_id: Optional[str] = None):
        """Start background heartbeat task"""
        if self.heartbeat_task and not self.heartbeat_task.done():
            logger.warning("Heartbeat already running")
            return

        self.heartbeat_task = asyncio.create_task(self.heartbeat_loop(match_id))

    async def stop_heartbeat(self):
        """Stop background heartbeat task"""
        if self.heartbeat_task:
            self._running = False
            self.heartbeat_task.cancel()
            try:
                await self.heartbeat_task
            except asyncio.CancelledError:
                pass
            self.heartbeat_task = None
            logger.info("Heartbeat stopped")

    async def fetch_match_list(self) -> List[Dict[str, Any]]:
        """
        Fetch active matches, most recently refreshed first

        Returns:
            List of match dictionaries (camelCase keys, as served)
        """
        response = await self._make_request("GET", "/api/matches/list")

        if response and "matches" in response:
            logger.info(f"Fetched {len(response['matches'])} match(es)")
            return response["matches"]

        logger.warning("Failed to fetch match list")
        return []

    async def fetch_stats(self) -> Optional[Dict[str, Any]]:
        """Fetch registry counters from /stats"""
        return await self._make_request("GET", "/stats", retry=False)

    async def check_health(self) -> bool:
        """
        Check if the match server is accessible

        Returns:
            True if the match server is healthy
        """
        response = await self._make_request("GET", "/health", retry=False)
        return response is not None and response.get("status") == "ok"
