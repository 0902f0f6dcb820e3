"""Record which hosts talked to blacklisted peers in the hosts collection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pymongo.errors import PyMongoError

from rita.data import UniqueIP
from rita.workers import Update, WorkerPool, upsert_update, worker_count

_default_log = logging.getLogger(__name__)


def _ip_document(ip: UniqueIP) -> dict:
    return {"ip": ip.ip, "network_uuid": ip.network_uuid, "network_name": ip.network_name}


def _ip_from_document(doc: dict) -> UniqueIP:
    return UniqueIP(doc.get("ip", ""), doc.get("network_uuid"), doc.get("network_name", ""))


@dataclass(frozen=True)
class ConnectionPeer:
    """How many connections and bytes passed between a host and a blacklisted IP."""

    host: UniqueIP
    connections: int = 0
    total_bytes: int = 0


def _peer_from_document(doc: dict) -> ConnectionPeer:
    return ConnectionPeer(
        host=_ip_from_document(doc.get("_id") or {}),
        connections=int(doc.get("bl_conn_count", 0)),
        total_bytes=int(doc.get("bl_total_bytes", 0)),
    )


@dataclass
class IPResult:
    """A blacklisted IP with a summary of the connections involving it."""

    host: UniqueIP
    connections: int = 0
    unique_connections: int = 0
    total_bytes: int = 0
    peers: list[UniqueIP] = field(default_factory=list)


@dataclass
class HostnameResult:
    """A blacklisted hostname with a summary of the connections made to it."""

    host: str
    connections: int = 0
    unique_connections: int = 0
    total_bytes: int = 0
    connected_hosts: list[UniqueIP] = field(default_factory=list)


def _blacklisted_peer_update(
    chunk: int, blacklisted: UniqueIP, peer: ConnectionPeer, new_flag: bool, count_field: str
) -> Update:
    if new_flag:
        query = {
            "$push": {
                "dat": {
                    "bl": _ip_document(blacklisted),
                    count_field: 1,
                    "bl_total_bytes": peer.total_bytes,
                    "bl_conn_count": peer.connections,
                    "cid": chunk,
                }
            }
        }
        return Update(peer.host.bson_key(), query)

    query = {
        "$set": {
            "dat.$.bl_conn_count": peer.connections,
            "dat.$.bl_total_bytes": peer.total_bytes,
            f"dat.$.{count_field}": 1,
            "dat.$.cid": chunk,
        }
    }
    selector = peer.host.bson_key()
    selector["dat.bl"] = blacklisted.bson_key()
    return Update(selector, query)


def append_blacklisted_dst_query(
    chunk: int, blacklisted_dst: UniqueIP, src_conn_data: ConnectionPeer, new_flag: bool
) -> Update:
    """Update for a host which contacted a blacklisted destination."""
    return _blacklisted_peer_update(chunk, blacklisted_dst, src_conn_data, new_flag, "bl_out_count")


def append_blacklisted_src_query(
    chunk: int, blacklisted_src: UniqueIP, dst_conn_data: ConnectionPeer, new_flag: bool
) -> Update:
    """Update for a host which was contacted by a blacklisted source."""
    return _blacklisted_peer_update(chunk, blacklisted_src, dst_conn_data, new_flag, "bl_in_count")


def _uconn_peer_pipeline(ip: UniqueIP, match_side: str, peer_side: str) -> list[dict]:
    return [
        {"$match": {match_side: ip.ip, f"{match_side}_network_uuid": ip.network_uuid}},
        {"$unwind": "$dat"},
        {
            "$group": {
                "_id": {"ip": f"${peer_side}", "network_uuid": f"${peer_side}_network_uuid"},
                "bl_conn_count": {"$sum": "$dat.count"},
                "bl_total_bytes": {"$sum": "$dat.tbytes"},
            }
        },
    ]


def bl_destination_pipeline(ip: UniqueIP) -> list[dict]:
    """Aggregation finding the hosts that contacted a blacklisted destination."""
    return _uconn_peer_pipeline(ip, "dst", "src")


def bl_source_pipeline(ip: UniqueIP) -> list[dict]:
    """Aggregation finding the hosts that a blacklisted source contacted."""
    return _uconn_peer_pipeline(ip, "src", "dst")


class BlacklistRepository:
    """Updates host records with the blacklisted peers they talked to."""

    def __init__(self, db, host_table: str, uconn_table: str, chunk: int, log: logging.Logger | None = None) -> None:
        self._db = db
        self._host_table = host_table
        self._uconn_table = uconn_table
        self._chunk = chunk
        self._log = log or _default_log

    def upsert(self) -> None:
        """Walk every blacklisted host and write its peers' records."""
        hosts = self._db[self._host_table]
        writer = WorkerPool(
            lambda update: upsert_update(hosts, update, self._log, "bl updater", require_matched=True)
        )
        analyzer = WorkerPool(lambda ip: self._analyze(ip, writer.collect), on_close=writer.close)
        for _ in range(worker_count()):
            analyzer.start()
            writer.start()

        print("\t[-] Updating blacklisted peers ...")
        try:
            for doc in hosts.find({"blacklisted": True}):
                analyzer.collect(_ip_from_document(doc))
        finally:
            analyzer.close()

    def _analyze(self, blacklisted_ip: UniqueIP, emit) -> None:
        dst_peers = self._peers(bl_destination_pipeline(blacklisted_ip))
        src_peers = self._peers(bl_source_pipeline(blacklisted_ip))

        for peer in dst_peers:
            new_flag = not self._has_entry(peer.host, blacklisted_ip)
            emit(append_blacklisted_dst_query(self._chunk, blacklisted_ip, peer, new_flag))

        for peer in src_peers:
            new_flag = not self._has_entry(peer.host, blacklisted_ip)
            emit(append_blacklisted_src_query(self._chunk, blacklisted_ip, peer, new_flag))

    def _peers(self, pipeline: list[dict]) -> list[ConnectionPeer]:
        try:
            docs = list(self._db[self._uconn_table].aggregate(pipeline, allowDiskUse=True))
        except PyMongoError as exc:
            self._log.error("[bl updater] peer lookup failed: %s", exc)
            return []
        return [_peer_from_document(doc) for doc in docs]

    def _has_entry(self, host: UniqueIP, blacklisted_ip: UniqueIP) -> bool:
        selector = host.bson_key()
        selector["dat.bl"] = blacklisted_ip.bson_key()
        try:
            return self._db[self._host_table].find_one(selector) is not None
        except PyMongoError as exc:
            self._log.error("[bl updater] host lookup failed: %s", exc)
            return False