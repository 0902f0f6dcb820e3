# rita

Building blocks for hunting suspicious behaviour in network traffic. The
package turns aggregated connection, DNS, host, certificate and HTTP user
agent data into MongoDB upserts, and reads a few summarised reports back out.

## Installation

```
pip install .
```

The tests need the `test` extra:

```
pip install ".[test]"
pytest
```

## Modules

- `rita.util` – small helpers: `exists`, `is_dir`, `sort_by_string_length`,
  `abs_int64` (two's complement 64-bit absolute value) and `round_half_up`.
- `rita.netutil` – address helpers: `parse_subnets` (a bare address becomes a
  `/32`; an unparsable entry raises `ValueError`), `ip_is_publicly_routable`
  (loopback, link-local, RFC 1918 and `fc00::/7` are not), `contains_ip`,
  `contains_domain` (exact entries and `*.` wildcards), `is_ip`, `is_ipv4`
  and `ipv4_to_binary`. It also holds the flag values
  `PUBLIC_NETWORK_UUID`/`PUBLIC_NETWORK_NAME` and
  `UNKNOWN_PRIVATE_NETWORK_UUID`/`UNKNOWN_PRIVATE_NETWORK_NAME`.
- `rita.data` – `UniqueIP`, `UniqueSrcIP`, `UniqueDstIP`, `UniqueIPPair` and
  `UniqueIPSet`. A `UniqueIP` binds an address to a network UUID so that
  private addresses on different networks stay apart; the network name takes
  no part in equality. `UniqueIP.from_address` assigns the public network to
  routable addresses, the agent's network to private ones, and the unknown
  private network when the agent UUID or name is missing or invalid.
- `rita.workers` – `WorkerPool`, a queue feeding a handler on one or more
  threads (`start`, `collect`, `close`, usable as a context manager; the
  first handler error is raised from `close`), `worker_count`, the `Update`
  selector/query pair and `upsert_update`, which upserts one `Update` and
  logs failures.
- One repository per collection, each taking a `pymongo` database handle,
  collection names, the current chunk id and an optional logger:
  - `rita.explodeddns.ExplodedDNSRepository(db, table, hostnames_table, chunk, log)`
    with `create_indexes`, `upsert(domain_map)` and `results(limit, no_limit)`.
    `explode_domain` lists every parent domain of a name.
  - `rita.hostname.HostnameRepository(db, blacklist_db, table, chunk, log)`
    with `create_indexes` and `upsert(hostname_map)` of `HostnameInput`.
  - `rita.host.HostRepository(db, blacklist_db, table, chunk, log)` with
    `create_indexes` and `upsert(host_map)` of `HostInput`.
  - `rita.uconn.UconnRepository(db, table, host_table, chunk, conn_limit, log)`
    with `create_indexes`, `upsert(uconn_map)` of `UconnInput` and
    `long_conn_results(thresh, limit, no_limit)`. Pairs with at least
    `conn_limit` connections are stored as strobes.
  - `rita.useragent.UserAgentRepository(db, table, host_table, chunk, log)`
    with `create_indexes`, `upsert(useragent_map)` of `UserAgentInput` and
    `results(sort_direction, limit, no_limit)`. Signatures used by fewer than
    five hosts are recorded on those hosts.
  - `rita.certificate.CertificateRepository(db, table, chunk, log)` with
    `create_indexes` and `upsert(cert_map)` of `CertificateInput`.
  - `rita.blacklist.BlacklistRepository(db, host_table, uconn_table, chunk, log)`
    with `upsert()`, which records on each peer host the blacklisted hosts it
    talked to.

The query and pipeline builders each repository uses are public as well, so
the documents they write can be inspected without a database:
`new_domain_update`, `existing_domain_update`, `hostname_update`,
`standard_query`, `build_exploded_dns_array`, `max_dns_query_count_query`,
`uconn_update`, `long_conn_pipeline`, `useragent_update`,
`rare_signature_pipeline`, `host_query`, `certificate_update`,
`append_blacklisted_dst_query`, `append_blacklisted_src_query`,
`bl_destination_pipeline`, `bl_source_pipeline` and the two
`results_pipeline` functions.

The `blacklist_db` handle given to `HostnameRepository` and `HostRepository`
is looked up in its `hostname` and `ip` collections, on the `index` field.

`upsert` methods print a one-line progress summary to standard output.

## Example

```python
import ipaddress
from rita.data import UniqueIP, UniqueIPSet
from rita.netutil import ip_is_publicly_routable

print(ip_is_publicly_routable(ipaddress.ip_address("8.8.8.8")))  # True

host = UniqueIP.from_address(
    ipaddress.ip_address("192.168.1.1"),
    "ff0d0776-0cdc-4a10-b793-522bcd48a560",
    "office",
)
peers = UniqueIPSet()
peers.insert(host)
peers.insert(host)
print(len(peers))  # 1
```

Writing to the database takes a `pymongo` database handle:

```python
from pymongo import MongoClient
from rita.explodeddns import ExplodedDNSRepository

db = MongoClient("mongodb://localhost:27017")["dataset"]
repo = ExplodedDNSRepository(db, "explodedDns", "hostnames", 0, None)
repo.create_indexes()
repo.upsert({"a.b.example.com": 3, "example.com": 1})
for row in repo.results(10, False):
    print(row.domain, row.subdomain_count, row.visited)
```

## What the package does not do

- It has no command-line program; everything is used from Python.
- It does not read or parse traffic logs. Callers build the input maps
  (`HostInput`, `UconnInput` and so on) themselves.
- It does not load a configuration file or connect to MongoDB on its own;
  collection names, chunk ids and database handles are passed in.
- It does not download or build blacklist feeds. It only reads an existing
  blacklist database.
- It does not write HTML or other reports, and it has no beacon, strobe or
  blacklist result queries beyond the ones listed above.
- It does not remove old chunks from the collections.