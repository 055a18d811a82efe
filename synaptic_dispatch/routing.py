#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Router
======
Computes paths and ETAs between a resource and its emergency.

Route geometry comes from a pluggable provider:

- StraightLineProvider: great-circle segment at a constant speed (offline)
- RoadNetworkProvider: A* over a networkx road graph, optionally loaded from
  OpenStreetMap through osmnx
- MapboxDirectionsProvider: the Mapbox Directions API over aiohttp

The Router wraps a provider with a per-call timeout, a concurrency limit and a
cache keyed by rounded (origin, destination).
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict, Hashable, List, Optional, Sequence, Tuple, Union

import aiohttp
import networkx as nx
import numpy as np

from .config import RouterConfig
from .errors import NoPathFound, ProviderUnavailable, RouteTimeout, RoutingError
from .models import Location, Route, haversine_m

logger = logging.getLogger("DispatchRouter")

# Constants
ROUTING_TIMEOUT = 5.0  # seconds per provider call
MAX_ROUTE_ATTEMPTS = 3  # failed attempts before an assignment is revoked
DEFAULT_SPEED_KMH = 60.0
HEURISTIC_SPEED_MS = 22.2  # 80 km/h, upper bound used by the A* heuristic

CacheKey = Tuple[Tuple[float, float], Tuple[float, float]]


class RoutingProvider(ABC):
    """Given two coordinates, returns an ordered path with distance and ETA."""

    name = "provider"

    @abstractmethod
    async def fetch_route(self, origin: Location, destination: Location) -> Route:
        """
        Raises:
            ProviderUnavailable: transient failure, worth retrying
            NoPathFound: the endpoints are not connected
        """

    async def close(self) -> None:
        pass


class StraightLineProvider(RoutingProvider):
    """Straight segment between the endpoints at a constant speed."""

    name = "straight_line"

    def __init__(self, speed_kmh: float = DEFAULT_SPEED_KMH):
        if speed_kmh <= 0:
            raise ValueError("speed_kmh must be positive")
        self.speed_ms = speed_kmh / 3.6

    async def fetch_route(self, origin: Location, destination: Location) -> Route:
        distance = origin.distance_to(destination)
        return Route(
            origin=origin,
            destination=destination,
            geometry=[(origin.lat, origin.lon), (destination.lat, destination.lon)],
            distance_m=distance,
            eta_s=distance / self.speed_ms,
            provider=self.name,
        )


class RoadNetworkProvider(RoutingProvider):
    """
    Fastest path over a road graph.

    Nodes carry `y` (lat) and `x` (lon); edges carry `length` (m) and
    `travel_time` (s), as osmnx produces them.
    """

    name = "road_network"

    def __init__(self, graph: nx.Graph, speed_factor: float = 1.0):
        """
        Initialize the provider.

        Args:
            graph: Road graph (DiGraph or MultiDiGraph)
            speed_factor: Multiplier on travel times, e.g. 0.75 for vehicles
                running under lights and sirens
        """
        self.graph = graph
        self.speed_factor = speed_factor

        self.nodes: Dict[Hashable, Tuple[float, float]] = {
            node: (float(data["y"]), float(data["x"]))
            for node, data in graph.nodes(data=True)
        }
        self._node_ids = list(self.nodes)
        self._coords = np.array([self.nodes[n] for n in self._node_ids], dtype=float).reshape(-1, 2)

        logger.info(f"Road network ready: {graph.number_of_nodes()} nodes, "
                    f"{graph.number_of_edges()} edges")

    @classmethod
    def from_edges(cls, nodes: Dict[Hashable, Tuple[float, float]],
                   edges: Sequence[Sequence], default_speed_kmh: float = 50.0,
                   bidirectional: bool = True, **kwargs) -> "RoadNetworkProvider":
        """
        Build a graph from plain data.

        Args:
            nodes: node id -> (lat, lon)
            edges: (u, v) or (u, v, speed_kmh) tuples; length is the haversine
                distance between the nodes
            default_speed_kmh: Speed for edges that do not give one
            bidirectional: Add the reverse edge too
        """
        graph = nx.MultiDiGraph()
        for node, (lat, lon) in nodes.items():
            graph.add_node(node, y=lat, x=lon)

        for edge in edges:
            u, v = edge[0], edge[1]
            speed_kmh = float(edge[2]) if len(edge) > 2 else default_speed_kmh
            (lat1, lon1), (lat2, lon2) = nodes[u], nodes[v]
            length = haversine_m(lat1, lon1, lat2, lon2)
            attrs = {"length": length, "speed_kph": speed_kmh,
                     "travel_time": length / (speed_kmh / 3.6)}
            graph.add_edge(u, v, **attrs)
            if bidirectional:
                graph.add_edge(v, u, **attrs)

        return cls(graph, **kwargs)

    @classmethod
    def from_file(cls, filepath: str, **kwargs) -> "RoadNetworkProvider":
        """
        Load a road network saved as JSON (`{"nodes": {id: [lat, lon]},
        "edges": [[u, v, speed_kmh?], ...]}`) or as osmnx GraphML.
        """
        if filepath.endswith(".graphml"):
            import osmnx as ox
            return cls(ox.load_graphml(filepath), **kwargs)

        with open(filepath, "r") as f:
            data = json.load(f)
        nodes = {node: tuple(coords) for node, coords in data["nodes"].items()}
        edges = [[str(e[0]), str(e[1])] + list(e[2:]) for e in data["edges"]]
        return cls.from_edges(nodes, edges,
                              default_speed_kmh=data.get("default_speed_kmh", 50.0), **kwargs)

    @classmethod
    def from_place(cls, place: str, **kwargs) -> "RoadNetworkProvider":
        """Download the drivable network for a place name from OpenStreetMap."""
        import osmnx as ox

        graph = ox.graph_from_place(place, network_type="drive")
        graph = ox.add_edge_speeds(graph)
        graph = ox.add_edge_travel_times(graph)
        logger.info(f"Loaded road network for {place} from OSM")
        return cls(graph, **kwargs)

    def _nearest_node(self, location: Location) -> Optional[Hashable]:
        if not self._node_ids:
            return None
        distances = haversine_m(location.lat, location.lon, self._coords[:, 0], self._coords[:, 1])
        return self._node_ids[int(np.argmin(distances))]

    def _a_star_heuristic(self, u: Hashable, v: Hashable) -> float:
        (u_lat, u_lon), (v_lat, v_lon) = self.nodes[u], self.nodes[v]
        return haversine_m(u_lat, u_lon, v_lat, v_lon) / HEURISTIC_SPEED_MS

    def _best_edge(self, u: Hashable, v: Hashable) -> Dict:
        data = self.graph.get_edge_data(u, v)
        if self.graph.is_multigraph():
            return min(data.values(), key=lambda attrs: attrs.get("travel_time", float("inf")))
        return data

    def shortest_path(self, origin: Location, destination: Location) -> Route:
        start_node = self._nearest_node(origin)
        end_node = self._nearest_node(destination)
        if start_node is None or end_node is None:
            raise NoPathFound("Road network is empty")

        try:
            route_nodes = nx.astar_path(self.graph, start_node, end_node,
                                        heuristic=self._a_star_heuristic, weight="travel_time")
        except (nx.NetworkXNoPath, nx.NodeNotFound) as e:
            raise NoPathFound(f"No road path from {start_node} to {end_node}") from e

        distance = 0.0
        total_time = 0.0
        geometry = [(origin.lat, origin.lon)]
        for u, v in zip(route_nodes, route_nodes[1:]):
            edge = self._best_edge(u, v)
            distance += float(edge.get("length", 0.0))
            total_time += float(edge.get("travel_time", 0.0))
            if "geometry" in edge:
                # osmnx edge geometries are shapely LineStrings in (lon, lat)
                geometry.extend((lat, lon) for lon, lat in edge["geometry"].coords)
            else:
                geometry.append(self.nodes[u])
        geometry.append(self.nodes[route_nodes[-1]])
        geometry.append((destination.lat, destination.lon))

        # Leg from the endpoints to the graph at the average speed of the path
        access = (origin.distance_to(Location(*self.nodes[start_node]))
                  + destination.distance_to(Location(*self.nodes[end_node])))
        speed_ms = distance / total_time if total_time > 0 else DEFAULT_SPEED_KMH / 3.6
        distance += access
        total_time += access / speed_ms

        return Route(origin, destination, geometry, distance,
                     total_time * self.speed_factor, provider=self.name)

    async def fetch_route(self, origin: Location, destination: Location) -> Route:
        return await asyncio.to_thread(self.shortest_path, origin, destination)


class MapboxDirectionsProvider(RoutingProvider):
    """Client for the Mapbox Directions API."""

    name = "mapbox"
    BASE_URL = "https://api.mapbox.com/directions/v5/mapbox"
    NO_ROUTE_CODES = ("NoRoute", "NoSegment")

    def __init__(self, access_token: str, profile: str = "driving",
                 session: Optional[aiohttp.ClientSession] = None,
                 base_url: str = BASE_URL):
        if not access_token:
            raise ValueError("Mapbox access token is required")
        self.access_token = access_token
        self.profile = profile
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    def _url(self, origin: Location, destination: Location) -> str:
        return (f"{self.base_url}/{self.profile}/"
                f"{origin.lon},{origin.lat};{destination.lon},{destination.lat}")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def fetch_route(self, origin: Location, destination: Location) -> Route:
        session = await self._get_session()
        params = {"geometries": "geojson", "overview": "full",
                  "access_token": self.access_token}

        try:
            async with session.get(self._url(origin, destination), params=params) as response:
                if response.status == 429:
                    retry_after = response.headers.get("Retry-After")
                    logger.warning(f"Mapbox rate limit hit (retry after {retry_after}s)")
                    raise ProviderUnavailable(
                        "Mapbox rate limit exceeded",
                        retry_after=float(retry_after) if retry_after else None)
                if response.status >= 500:
                    raise ProviderUnavailable(f"Mapbox server error (HTTP {response.status})")

                status = response.status
                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    # Proxies and gateways answer with HTML error pages
                    raise ProviderUnavailable(
                        f"Mapbox returned a non-JSON body (HTTP {status})") from e
        except aiohttp.ClientError as e:
            raise ProviderUnavailable(f"Mapbox request failed: {e}") from e

        if not isinstance(data, dict):
            raise ProviderUnavailable(f"Mapbox returned {type(data).__name__} (HTTP {status}), "
                                      f"expected an object")

        code = data.get("code")
        if code in self.NO_ROUTE_CODES:
            raise NoPathFound(f"Mapbox found no route: {data.get('message', code)}")
        if status >= 400:
            raise ProviderUnavailable(f"Mapbox request rejected (HTTP {status}): "
                                      f"{data.get('message', code)}")
        if code != "Ok":
            raise ProviderUnavailable(f"Mapbox error {code}: {data.get('message', '')}")

        routes = data.get("routes") or []
        if not routes:
            raise NoPathFound("Mapbox returned no routes")

        try:
            best = routes[0]
            coordinates = best.get("geometry", {}).get("coordinates", [])
            return Route(
                origin=origin,
                destination=destination,
                geometry=[(float(lat), float(lon)) for lon, lat in coordinates],
                distance_m=float(best.get("distance", 0.0)),
                eta_s=float(best.get("duration", 0.0)),
                provider=self.name,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ProviderUnavailable(f"Mapbox returned a malformed route: {e}") from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class Router:
    """
    Caching, concurrency-limited front for a RoutingProvider.

    Successful routes are cached by rounded endpoints for `cache_ttl_s`.
    Failures are never cached so the pair is retried on the next cycle.
    """

    def __init__(self, provider: RoutingProvider, timeout_s: float = ROUTING_TIMEOUT,
                 cache_precision: int = 5, cache_ttl_s: Optional[float] = 300.0,
                 max_concurrency: int = 8):
        self.provider = provider
        self.timeout_s = timeout_s
        self.cache_precision = cache_precision
        self.cache_ttl_s = cache_ttl_s
        self.max_concurrency = max_concurrency

        self._cache: Dict[CacheKey, Tuple[Route, float]] = {}
        self._semaphore: Optional[asyncio.Semaphore] = None
        self.stats = {"hits": 0, "misses": 0, "provider_calls": 0, "failures": 0}

    def cache_key(self, origin: Location, destination: Location) -> CacheKey:
        return (origin.rounded(self.cache_precision), destination.rounded(self.cache_precision))

    def _cached(self, key: CacheKey) -> Optional[Route]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        route, stored_at = entry
        if self.cache_ttl_s is not None and time.monotonic() - stored_at > self.cache_ttl_s:
            del self._cache[key]
            return None
        return route

    async def _call_provider(self, origin: Location, destination: Location) -> Route:
        # Semaphore is created lazily so it binds to the running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)

        async with self._semaphore:
            self.stats["provider_calls"] += 1
            try:
                return await asyncio.wait_for(self.provider.fetch_route(origin, destination),
                                              timeout=self.timeout_s)
            except asyncio.TimeoutError:
                raise RouteTimeout(f"{self.provider.name} timed out after {self.timeout_s}s "
                                   f"routing {origin} -> {destination}") from None

    async def route(self, origin: Location, destination: Location) -> Route:
        """
        Route between two points, from cache when possible.

        Raises:
            RoutingError: ProviderUnavailable (incl. RouteTimeout) or NoPathFound
        """
        key = self.cache_key(origin, destination)
        cached = self._cached(key)
        if cached is not None:
            self.stats["hits"] += 1
            return cached.with_endpoints(origin, destination)

        self.stats["misses"] += 1
        try:
            route = await self._call_provider(origin, destination)
        except RoutingError as e:
            self.stats["failures"] += 1
            logger.warning(f"Routing failed ({type(e).__name__}): {e}")
            raise

        self._cache[key] = (route, time.monotonic())
        return route.with_endpoints(origin, destination)

    async def _route_or_error(self, origin: Location, destination: Location) -> Union[Route, RoutingError]:
        try:
            return await self.route(origin, destination)
        except RoutingError as e:
            return e

    async def route_many(self, pairs: Sequence[Tuple[Location, Location]]) -> List[Union[Route, RoutingError]]:
        """
        Route several pairs concurrently. Pairs sharing a cache key share one
        provider call. Every call has finished (or timed out) on return.

        Returns:
            A Route or the RoutingError raised, aligned with `pairs`
        """
        unique: Dict[CacheKey, Tuple[Location, Location]] = {}
        for origin, destination in pairs:
            unique.setdefault(self.cache_key(origin, destination), (origin, destination))

        keys = list(unique)
        outcomes = await asyncio.gather(*(self._route_or_error(*unique[k]) for k in keys),
                                        return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException) and not isinstance(outcome, RoutingError):
                raise outcome
        by_key = dict(zip(keys, outcomes))

        results: List[Union[Route, RoutingError]] = []
        for origin, destination in pairs:
            outcome = by_key[self.cache_key(origin, destination)]
            if isinstance(outcome, Route):
                outcome = outcome.with_endpoints(origin, destination)
            results.append(outcome)
        return results

    def invalidate_endpoint(self, location: Location) -> int:
        """Drop every cached route starting or ending at `location`. Returns the count."""
        point = location.rounded(self.cache_precision)
        stale = [key for key in self._cache if point in key]
        for key in stale:
            del self._cache[key]
        if stale:
            logger.debug(f"Invalidated {len(stale)} cached route(s) at {point}")
        return len(stale)

    def clear(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def close(self) -> None:
        await self.provider.close()


def build_provider(config: RouterConfig) -> RoutingProvider:
    """Instantiate the provider named in the configuration."""
    if config.provider == "straight_line":
        return StraightLineProvider(speed_kmh=config.speed_kmh)
    if config.provider == "mapbox":
        return MapboxDirectionsProvider(config.mapbox_token, profile=config.mapbox_profile)
    if config.provider == "road_network":
        if config.road_network_file:
            return RoadNetworkProvider.from_file(config.road_network_file)
        if config.road_network_place:
            return RoadNetworkProvider.from_place(config.road_network_place)
        raise ValueError("road_network provider needs road_network_file or road_network_place")
    raise ValueError(f"Unknown routing provider: {config.provider!r}")


def build_router(config: RouterConfig, provider: Optional[RoutingProvider] = None) -> Router:
    return Router(
        provider or build_provider(config),
        timeout_s=config.timeout_s,
        cache_precision=config.cache_precision,
        cache_ttl_s=config.cache_ttl_s,
        max_concurrency=config.max_concurrency,
    )
