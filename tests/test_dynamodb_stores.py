try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import copy
from datetime import timedelta
from types import SimpleNamespace

import pytest
from boto3.dynamodb.types import TypeDeserializer
from botocore.exceptions import ClientError

from shim_server.clients.dynamodb import DynamoDBCorrelationStore, DynamoDBCredentialStore
from shim_server.clients.stores import DuplicateStateKeyError
from shim_server.core.config import StorageSettings
from shim_server.models.records import (
    AccessParameters,
    AuthorizationRequestParameters,
    HandshakeState,
    utcnow,
)


def _condition_failed(operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "failed"}},
        operation,
    )


def _matches(condition, item: dict) -> bool:
    """Evaluate the subset of boto3 condition objects the stores emit."""
    kind = type(condition).__name__
    values = condition.get_expression()["values"]
    if kind == "And":
        return all(_matches(value, item) for value in values)
    if kind == "Or":
        return any(_matches(value, item) for value in values)
    name = values[0].name
    if kind == "AttributeNotExists":
        return name not in item
    if name not in item:
        return False
    actual = item[name]
    if kind == "Equals":
        return actual == values[1]
    if kind == "GreaterThan":
        return actual > values[1]
    if kind == "LessThanEquals":
        return actual <= values[1]
    if kind == "BeginsWith":
        return str(actual).startswith(values[1])
    raise NotImplementedError(kind)


class _BatchWriter:
    def __init__(self, table: "FakeTable") -> None:
        self._table = table

    def __enter__(self) -> "_BatchWriter":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def delete_item(self, Key: dict) -> None:
        self._table.delete_item(Key=Key)


class _FakeClient:
    """Low-level client exposing the transactional write the credential store uses."""

    def __init__(self, table: "FakeTable") -> None:
        self._table = table
        self._deserializer = TypeDeserializer()

    def _plain(self, attributes: dict) -> dict:
        return {
            name: self._deserializer.deserialize(value)
            for name, value in attributes.items()
        }

    def transact_write_items(self, TransactItems: list) -> dict:
        for action in TransactItems:
            check = action.get("ConditionCheck")
            if check is None:
                continue
            assert check["ConditionExpression"] == "attribute_exists(pk)"
            key = self._plain(check["Key"])
            if (key["pk"], key["sk"]) not in self._table.items:
                raise ClientError(
                    {
                        "Error": {
                            "Code": "TransactionCanceledException",
                            "Message": "Transaction cancelled",
                        }
                    },
                    "TransactWriteItems",
                )
        for action in TransactItems:
            if "Put" in action:
                self._table.put_item(Item=self._plain(action["Put"]["Item"]))
        return {}


class FakeTable:
    """In-memory stand-in for a DynamoDB table resource keyed by pk/sk."""

    def __init__(self) -> None:
        self.name = "shims"
        self.items: dict[tuple[str, str], dict] = {}
        self.meta = SimpleNamespace(client=_FakeClient(self))

    def put_item(self, Item: dict, ConditionExpression=None) -> dict:
        key = (Item["pk"], Item["sk"])
        existing = self.items.get(key, {})
        if ConditionExpression is not None and not _matches(ConditionExpression, existing):
            raise _condition_failed("PutItem")
        self.items[key] = copy.deepcopy(Item)
        return {}

    def get_item(self, Key: dict) -> dict:
        item = self.items.get((Key["pk"], Key["sk"]))
        return {"Item": copy.deepcopy(item)} if item else {}

    def delete_item(self, Key: dict) -> dict:
        self.items.pop((Key["pk"], Key["sk"]), None)
        return {}

    def update_item(
        self,
        Key: dict,
        UpdateExpression: str,
        ConditionExpression=None,
        ExpressionAttributeNames=None,
        ExpressionAttributeValues=None,
        ReturnValues: str = "NONE",
    ) -> dict:
        key = (Key["pk"], Key["sk"])
        item = self.items.get(key)
        if ConditionExpression is not None and not _matches(ConditionExpression, item or {}):
            raise _condition_failed("UpdateItem")
        item = item if item is not None else dict(Key)
        names = ExpressionAttributeNames or {}
        action, _, clause = UpdateExpression.partition(" ")
        if action == "SET":
            target, _, placeholder = clause.partition(" = ")
            item[names.get(target, target)] = ExpressionAttributeValues[placeholder]
        elif action == "REMOVE":
            item.pop(names.get(clause, clause), None)
        self.items[key] = item
        if ReturnValues == "ALL_NEW":
            return {"Attributes": copy.deepcopy(item)}
        return {}

    def query(
        self,
        KeyConditionExpression,
        ScanIndexForward: bool = True,
        Limit=None,
        ExclusiveStartKey=None,
    ) -> dict:
        matches = sorted(
            (item for item in self.items.values() if _matches(KeyConditionExpression, item)),
            key=lambda item: item["sk"],
            reverse=not ScanIndexForward,
        )
        if Limit:
            matches = matches[:Limit]
        return {"Items": copy.deepcopy(matches)}

    def scan(self, FilterExpression, ProjectionExpression=None, ExclusiveStartKey=None) -> dict:
        matches = [item for item in self.items.values() if _matches(FilterExpression, item)]
        return {"Items": copy.deepcopy(matches)}

    def batch_writer(self) -> _BatchWriter:
        return _BatchWriter(self)


@pytest.fixture
def table() -> FakeTable:
    return FakeTable()


@pytest.fixture
def settings() -> StorageSettings:
    return StorageSettings(backend="dynamodb", dynamodb_table_name="shims")


@pytest.fixture
def correlations(settings, table) -> DynamoDBCorrelationStore:
    return DynamoDBCorrelationStore(settings, table=table)


@pytest.fixture
def credentials(settings, table, cipher) -> DynamoDBCredentialStore:
    return DynamoDBCredentialStore(settings, cipher=cipher, table=table)


def _record(state_key: str = "state-1", *, ttl: int = 900) -> AuthorizationRequestParameters:
    now = utcnow()
    return AuthorizationRequestParameters(
        state_key=state_key,
        user_id="alice",
        provider_key="fitbit",
        authorization_url="https://provider.example/auth",
        request_fields={"code_verifier": "v"},
        created_at=now,
        expires_at=now + timedelta(seconds=ttl),
    )


def test_table_name_is_required() -> None:
    with pytest.raises(ValueError):
        DynamoDBCorrelationStore(StorageSettings(dynamodb_table_name=None))


def test_create_sets_native_ttl_and_rejects_duplicates(correlations, table) -> None:
    record = _record()
    correlations.create(record)

    item = table.items[("handshake#state-1", "request")]
    assert item["ttl"] == int(record.expires_at.timestamp())
    assert "client_redirect_url" not in item

    with pytest.raises(DuplicateStateKeyError):
        correlations.create(_record())


def test_claim_follows_handshake_lifecycle(correlations) -> None:
    correlations.create(_record())

    assert correlations.claim("state-1", provider_key="withings", lease_seconds=60) is None
    claimed = correlations.claim("state-1", provider_key="fitbit", lease_seconds=60)
    assert claimed is not None
    assert claimed.request_fields == {"code_verifier": "v"}
    assert correlations.claim("state-1", provider_key="fitbit", lease_seconds=60) is None

    correlations.release("state-1")
    assert correlations.claim("state-1", provider_key="fitbit", lease_seconds=60) is not None

    assert correlations.finish("state-1", HandshakeState.RESOLVED) is True
    assert correlations.finish("state-1", HandshakeState.FAILED) is False
    assert correlations.get("state-1").state is HandshakeState.RESOLVED
    assert correlations.claim("state-1", provider_key="fitbit", lease_seconds=0) is None


def test_unknown_and_expired_keys_cannot_be_claimed(correlations) -> None:
    correlations.create(_record("old", ttl=-1))

    assert correlations.claim("old", provider_key="fitbit", lease_seconds=60) is None
    assert correlations.claim("missing", provider_key="fitbit", lease_seconds=60) is None
    assert correlations.get("old") is None


def test_purge_expired_removes_only_elapsed_requests(correlations, table) -> None:
    correlations.create(_record("old", ttl=-1))
    correlations.create(_record("fresh"))

    assert correlations.purge_expired() == 1
    assert ("handshake#fresh", "request") in table.items
    assert ("handshake#old", "request") not in table.items


def test_latest_credential_wins(credentials) -> None:
    created_at = utcnow()
    for token in ("first", "second"):
        credentials.save(
            AccessParameters(
                user_id="alice",
                provider_key="fitbit",
                payload={"access_token": token},
                created_at=created_at,
            )
        )

    assert credentials.latest("alice", "fitbit").payload == {"access_token": "second"}
    assert credentials.latest("alice", "withings") is None


def test_save_is_idempotent_per_state_key(credentials, table) -> None:
    first = credentials.save(
        AccessParameters(
            user_id="alice",
            provider_key="fitbit",
            payload={"access_token": "one"},
            state_key="state-1",
        )
    )
    again = credentials.save(
        AccessParameters(
            user_id="alice",
            provider_key="fitbit",
            payload={"access_token": "two"},
            state_key="state-1",
        )
    )

    assert again.credential_id == first.credential_id
    assert again.payload == {"access_token": "one"}
    assert len(credentials.list_for_user("alice")) == 1
    assert credentials.find_by_state_key("alice", "fitbit", "state-1") is not None
    assert credentials.find_by_state_key("bob", "fitbit", "state-1") is None

    stored = [item for item in table.items.values() if item["pk"] == "user#alice"]
    assert "one" not in stored[0]["payload_encrypted"]


def test_delete_all_also_drops_handshake_markers(credentials, table) -> None:
    credentials.save(
        AccessParameters(
            user_id="alice",
            provider_key="fitbit",
            payload={"access_token": "one"},
            state_key="state-1",
        )
    )
    credentials.save(
        AccessParameters(user_id="alice", provider_key="fitbit", payload={"access_token": "two"})
    )
    credentials.save(
        AccessParameters(user_id="alice", provider_key="withings", payload={"access_token": "w"})
    )

    assert credentials.delete_all("alice", "fitbit") == 2
    assert credentials.delete_all("alice", "fitbit") == 0
    assert ("handshake#state-1", "credential") not in table.items
    assert [c.provider_key for c in credentials.list_for_user("alice")] == ["withings"]


def test_replace_is_conditional_on_the_previous_grant(credentials) -> None:
    original = credentials.save(
        AccessParameters(
            user_id="alice",
            provider_key="fitbit",
            payload={"access_token": "one"},
            state_key="state-1",
        )
    )

    successor = credentials.replace(
        original.credential_id,
        AccessParameters(user_id="alice", provider_key="fitbit", payload={"access_token": "two"}),
    )

    assert successor is not None
    assert successor.state_key is None
    assert credentials.latest("alice", "fitbit").payload == {"access_token": "two"}

    assert credentials.delete_all("alice", "fitbit") == 2
    orphan = credentials.replace(
        successor.credential_id,
        AccessParameters(
            user_id="alice", provider_key="fitbit", payload={"access_token": "three"}
        ),
    )

    assert orphan is None
    assert credentials.latest("alice", "fitbit") is None


def test_replace_losing_the_race_to_a_delete_writes_nothing(credentials, table) -> None:
    original = credentials.save(
        AccessParameters(user_id="alice", provider_key="fitbit", payload={"access_token": "one"})
    )
    original_key = next(key for key in table.items if key[0] == "user#alice")
    real_query = table.query

    def query_then_delete(**kwargs):
        response = real_query(**kwargs)
        table.delete_item(Key={"pk": original_key[0], "sk": original_key[1]})
        return response

    table.query = query_then_delete
    successor = credentials.replace(
        original.credential_id,
        AccessParameters(user_id="alice", provider_key="fitbit", payload={"access_token": "two"}),
    )
    table.query = real_query

    assert successor is None
    assert credentials.latest("alice", "fitbit") is None


def test_handshake_marker_expires_with_its_handshake(settings, table, cipher) -> None:
    credentials = DynamoDBCredentialStore(
        settings, cipher=cipher, table=table, marker_ttl_seconds=960
    )
    stored = credentials.save(
        AccessParameters(
            user_id="alice",
            provider_key="fitbit",
            payload={"access_token": "one"},
            state_key="state-1",
        )
    )

    marker = table.items[("handshake#state-1", "credential")]
    assert marker["ttl"] == int(stored.created_at.timestamp()) + 960


def test_purge_expired_drops_the_marker_beside_an_expired_request(
    correlations, credentials, table
) -> None:
    correlations.create(_record("old", ttl=-1))
    correlations.create(_record("fresh"))
    for state_key in ("old", "fresh"):
        credentials.save(
            AccessParameters(
                user_id="alice",
                provider_key="fitbit",
                payload={"access_token": state_key},
                state_key=state_key,
            )
        )

    assert correlations.purge_expired() == 1
    assert ("handshake#old", "credential") not in table.items
    assert ("handshake#fresh", "credential") in table.items
    assert len(credentials.list_for_user("alice")) == 2
