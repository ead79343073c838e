# ccenter

The core of a contact-centre service as a library. It keeps track of agents
and their states, drives outbound and queued calls through a media-switch
connection, follows chat conversations, keeps a node's record in a cluster
and reserves queue members for distribution.

Every component takes its collaborators as plain objects: a store, a message
queue, a service-discovery client, a switch transport (`dial(url)`), a chat
client. The docstrings of each class list the methods it calls on them.

## What is inside

| Module | Purpose |
| --- | --- |
| `ccenter.errors` | `AppError`, the error operations raise, with `to_json()`; `GrpcCode`, `http_code_to_grpc`, `to_grpc_status`; `version()` gives the build version string. |
| `ccenter.watcher` | `Watcher`: calls a function every N milliseconds in a daemon thread until `stop()`. |
| `ccenter.agent_manager` | `Agent` and `AgentManager`: online, offline, pause and break-out states, a time-limited cache of agents, and `check_deadline_agents()` which sets offline agents that stayed online without an active socket. Events are built by `agent_status_event` and `agent_online_event`. |
| `ccenter.call_connection` | `CallConnection` to one switch: originate (`new_call`), hang up, bridge, hold, DTMF, playback, variables, caller id, break park; helpers `switch_err_to_sip_code`, `parse_sps`, `parse_server_version`, and `RateLimiter` for calls per second. |
| `ccenter.call` | `Call` with its `CallState` life cycle driven by `apply_event()` (`RingingEvent`, `ActiveEvent`, `BridgeEvent`, `HoldEvent`, `HangupEvent`, `AmdEvent`), timing figures (`duration_seconds`, `bill_seconds`, `answer_seconds`, `wait_seconds`), answering-machine results and `stats()`. |
| `ccenter.call_manager` | `CallManager` and `ConnectionPool`: registers switch connections found by discovery, creates calls, joins existing calls to a queue (`inbound_call_queue`, `connect_call`) and routes call events with `handle_call_action`. |
| `ccenter.chat_session` | `ChatSession` and `outbound_chat`: one participant's leg in a conversation. |
| `ccenter.conversation` | `Conversation` and `ChatState`: invitations, joins, declines, messages and closing. |
| `ccenter.chat_manager` | `ChatManager` and `ChatEvent`: the store of open conversations and `handle_event()`. |
| `ccenter.cluster` | `Cluster` and `ClusterInfo`: registers the node, keeps its record fresh through `heartbeat()` and reports `master()`. |
| `ccenter.engine` | `Engine`: reserves queue members for this node while the application is ready and releases them on start and stop. |
| `ccenter.member_api` | `build_attempt_callback` turns an `AttemptResultRequest` into an `AttemptCallback`; `terminate_member` tells final statuses apart. |

## Errors

Operations raise `ccenter.errors.AppError`. It carries where it happened, an
identifier, a detail message and an HTTP-style status code; `to_json()`
serialises it. `to_grpc_status(err)` turns an `AppError` into a
`GrpcStatusError` with the matching code: 400 becomes `INVALID_ARGUMENT`,
401 `UNAUTHENTICATED`, 403 `PERMISSION_DENIED`, 202 `RESOURCE_EXHAUSTED`, and
anything else `INTERNAL`. Other exceptions are returned unchanged.

## Examples

```python
from ccenter.call_connection import switch_err_to_sip_code, parse_sps
from ccenter.member_api import terminate_member

switch_err_to_sip_code(17)    # 486, user busy
switch_err_to_sip_code(16)    # 200, normal clearing
switch_err_to_sip_code(9999)  # 500 for causes the table does not know

parse_sps("+OK 30\n")         # 30: everything but the digits is dropped

terminate_member("success")   # True
terminate_member("abandoned") # False
```

A next distribution time is kept only when the status does not end the
member:

```python
from ccenter.member_api import AttemptResultRequest, build_attempt_callback

request = AttemptResultRequest(
    attempt_id=1, status="success", next_distribute_at=1_700_000_000_000, agent_id=7
)
callback = build_attempt_callback(request)
callback.next_call_at     # None, "success" ends the member
callback.sticky_agent_id  # 7
```

## What it does not do

The package contains no database store, no message-queue client, no
service-discovery client and no network transport to the switch or chat
service: these are supplied by the caller. It runs no gRPC server and has
no command-line program; it provides the components such a service is built
from.

## Tests

The tests use pytest and live in `tests/`, one file per module:

```
pip install -e .[test]
pytest
```