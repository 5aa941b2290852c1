# cityrelay

`cityrelay` is the core of a relay for group chat events. It does three things:

- It checks incoming events.
- It stores the events in SQLite.
- It keeps a queryable projection of group state: metadata, roles, members, bans, invites and join requests.

It uses only the standard library.

## Installation

```
pip install .
```

## Modules

### `cityrelay.models`

Dataclasses for the records the package works with:

- `Event`, `DeletedEvent` and `EventTag`.
- `Group`, `GroupRole`, `GroupMember`, `GroupBan`, `GroupInvite`, `GroupJoinRequest` and `GroupEvent`.
- The `Permission` enum: `add-user`, `promote-user`, `remove-user`, `edit-metadata`, `create-role`, `delete-role`, `delete-event`, `create-group`, `delete-group`, `create-invite` and `admin`.

### `cityrelay.schnorr`

BIP-340 Schnorr signatures over secp256k1, written in pure Python. Keys and signatures are hex strings.

- `generate_private_key()` returns a new private key.
- `public_key(private_key)` returns the public key for a private key.
- `sign(private_key, message, aux_rand)` signs a message.
- `verify(public_key, message, signature)` returns whether a signature is valid. It raises `ValueError` if an input is not well-formed hex of the right length.

### `cityrelay.validation`

- `Validator(max_skew).validate_event(event, now=None)` raises `ValidationError` for the first problem it finds. `max_skew` is a `timedelta` or a number of seconds. It checks, in this order:
  1. the hex format of the id, the pubkey and the signature;
  2. that `created_at` is present;
  3. clock skew;
  4. that tags are neither empty nor unnamed;
  5. that the id matches the payload;
  6. the signature.
- `compute_event_id(...)` returns the canonical sha256 id.
- `verify_signature(event)` checks only the signature.
- `sign_event(private_key, created_at, kind, tags, content)` builds and signs an `Event`.

### `cityrelay.abuse_controls`

`AbuseControls(burst, sustained_per_minute, default_pow_bits)` provides:

- `allow(pubkey, now=None)`: a per-pubkey token-bucket rate limit.
- `required_pow_bits(kind)`: the proof-of-work minimum for a kind. Some kinds have their own value, for example 9007 needs 28 bits and 0 needs 20. Every other kind gets `default_pow_bits`.
- `validate_pow(event, required_bits)`: raises `PowError` when the event id has too few leading zero bits. It also raises when a `nonce` tag declares a target below the required bits.

The module also has the helpers `leading_zero_bits` and `extract_nonce_difficulty`.

### `cityrelay.metrics`

`Metrics` is a set of thread-safe named counters, with `inc`, `get` and `snapshot`.

### `cityrelay.db`

- `connect(path)` opens a SQLite database, turns on foreign keys and creates the schema.
- `initialize_schema(conn)` creates any tables and indexes that are missing.
- `NotFoundError` is raised when a row is missing.

### `cityrelay.event_tags`

`normalize_tags(event_id, tags)` flattens named tags into `EventTag` rows.

### `cityrelay.events_repo`

`EventsRepo(conn)` stores and reads events:

- `insert_event` stores a regular event. It raises `DuplicateEventError` if the id is already stored.
- `upsert_replaceable_event` keeps the latest event for each pubkey and kind.
- `upsert_parameterized_replaceable_event(event, d_tag)` keeps the latest event for each pubkey, kind and `d` tag.
- `get_event` and `mark_deleted` read an event and record its deletion.
- `query_events(EventFilter)` returns events newest first, with ties broken by ascending id. The limit defaults to 100 and cannot exceed 500.

When two versions are compared, the newer `created_at` wins. If the times are equal, the lower id wins (`compare_replaceable_version`).

### `cityrelay.event_query`

`EventQueryService(repo)` reads events:

- `query_events` leaves out deleted events.
- `query_events_including_deleted` includes them.
- `query_nostr_filter(NostrFilter)` answers subscription-style filters. It pages backwards through storage with a cursor until it has `limit` matches, 100 by default.

`matches_nostr_filter` tests a single event against a filter.

### `cityrelay.group_repo`

`GroupRepo(conn)` holds the group projection tables, with upsert, list and delete methods for each table. It also provides `has_permission`, `is_admin`, `is_member`, `get_member_role` and `is_banned`.

- A group's creator holds every permission.
- `owner` holds every permission.
- `admin` gets a default set of permissions.
- Any role with the `admin` permission is granted every permission.

### `cityrelay.group_tags`

Tag parsing helpers, and the builders for the tags of the canonical state events (kinds 39000 to 39003).

### `cityrelay.group_vetting`

`GroupVettingService`:

- Vetted groups and unknown groups require approval.
- Otherwise a join is approved automatically unless the pubkey is banned.

### `cityrelay.group_projection`

`GroupProjectionService.apply_event(event)` applies these kinds to the projection:

| Kind | Action |
|------|--------|
| 9007 | create group |
| 9002 | edit metadata |
| 9003 | create role |
| 9004 | delete role |
| 9000 | put user |
| 9001 | remove user, with an optional ban |
| 9009 | create invite |
| 9021 | join request |
| 9022 | leave |
| 9008 | close group |
| 9005 | moderation delete |

Each kind checks the author's permissions. Failures raise `PermissionDeniedError` or `ProjectionError`.

When an events repository and the relay's keys are configured, the service also stores relay-signed canonical state events:

- 39000: metadata
- 39001: admins
- 39002: members
- 39003: roles

It also provides `approve_join_request` and `apply_deletion`.

### `cityrelay.event_delete`

`EventDeleteService.delete_event(DeletedEvent)` lets an author delete their own event. It raises `DeleteError` if the request is malformed or unauthorized, and passes the deletion on to the projection.

### `cityrelay.event_ingest`

`EventIngestService.ingest(event)` runs the full path for an incoming event:

1. validation;
2. rate limit, which raises `IngestError`;
3. proof of work;
4. relay-only kinds, which must be signed by the relay pubkey;
5. storage according to `event_storage_mode(kind)`;
6. projection.

`event_storage_mode(kind)` returns a `StorageMode`:

| Kinds | Mode |
|-------|------|
| 0, 3, 10000–19999 | `REPLACEABLE` |
| 20000–29999 | `EPHEMERAL` (not stored) |
| 30000–39999 | `PARAMETERIZED_REPLACEABLE` |
| all others | `REGULAR` |

## Example

```python
import time

from cityrelay.abuse_controls import AbuseControls
from cityrelay.db import connect
from cityrelay.event_ingest import EventIngestService
from cityrelay.events_repo import EventsRepo
from cityrelay.metrics import Metrics
from cityrelay.schnorr import generate_private_key, public_key
from cityrelay.validation import Validator, sign_event

conn = connect(":memory:")

relay_key = generate_private_key()
metrics = Metrics()
service = EventIngestService(
    EventsRepo(conn),
    Validator(300),
    AbuseControls(10, 600, 0),
    None,
    metrics,
    public_key(relay_key),
)

user_key = generate_private_key()
event = sign_event(user_key, int(time.time()), 1, [["t", "hello"]], "hello world")
service.ingest(event)
print(metrics.get("events_ingested_total"))  # 1
```

## What it does not do

This package is a library only. It has:

- no network server, so it does not accept websocket connections or speak the relay wire protocol;
- no command-line program;
- no configuration loading.

Callers open the database, build the services and pass events in themselves. Signing and verification use pure-Python arithmetic, which is correct but slow.

## Running the tests

```
pip install .[test]
pytest
```