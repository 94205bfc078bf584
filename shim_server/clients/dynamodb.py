"""
DynamoDB-backed correlation and credential stores.

Both stores share one table keyed by ``pk``/``sk``:

* ``handshake#<state_key>`` / ``request`` holds a correlation record.
* ``handshake#<state_key>`` / ``credential`` points at the grant a handshake produced.
* ``user#<user_id>`` / ``credential#<shim>#<created_at>#<ns>`` holds a grant.
"""

from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from shim_server.clients.stores import (
    CorrelationStore,
    CredentialStore,
    DuplicateStateKeyError,
    from_iso,
    to_iso,
)
from shim_server.core.config import StorageSettings
from shim_server.models.records import (
    AccessParameters,
    AuthorizationRequestParameters,
    HandshakeState,
)
from shim_server.services.token_cipher import TokenCipherService

_REQUEST_SK = "request"
_MARKER_SK = "credential"

_SERIALIZER = TypeSerializer()


def _is_condition_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _table_for(settings: StorageSettings) -> Any:
    if not settings.dynamodb_table_name:
        raise ValueError("DYNAMODB_TABLE_NAME must be set for the dynamodb backend.")
    resource = boto3.resource("dynamodb", region_name=settings.region_name)
    return resource.Table(settings.dynamodb_table_name)


class DynamoDBCorrelationStore(CorrelationStore):
    """Handshake records with conditional writes guarding every transition."""

    def __init__(self, settings: StorageSettings, *, table: Any = None) -> None:
        self._table = table if table is not None else _table_for(settings)

    @staticmethod
    def _key(state_key: str) -> Dict[str, str]:
        return {"pk": f"handshake#{state_key}", "sk": _REQUEST_SK}

    def create(self, record: AuthorizationRequestParameters) -> None:
        if record.expires_at is None:
            raise ValueError("Handshake records must carry an expiry.")
        item: Dict[str, Any] = {
            **self._key(record.state_key),
            "state_key": record.state_key,
            "user_id": record.user_id,
            "provider_key": record.provider_key,
            "authorization_url": record.authorization_url,
            "request_fields": json.dumps(record.request_fields),
            "state": record.state.value,
            "created_at": to_iso(record.created_at),
            "expires_at": to_iso(record.expires_at),
            # Native DynamoDB TTL attribute (epoch seconds).
            "ttl": int(record.expires_at.timestamp()),
        }
        if record.client_redirect_url:
            item["client_redirect_url"] = record.client_redirect_url
        try:
            self._table.put_item(
                Item=item,
                ConditionExpression=Attr("pk").not_exists(),
            )
        except ClientError as exc:
            if _is_condition_failure(exc):
                raise DuplicateStateKeyError(record.state_key) from exc
            raise

    def get(self, state_key: str) -> Optional[AuthorizationRequestParameters]:
        response = self._table.get_item(Key=self._key(state_key))
        item = response.get("Item")
        if not item:
            return None
        record = self._item_to_record(item)
        if record.is_expired():
            return None
        return record

    def claim(
        self,
        state_key: str,
        *,
        provider_key: str,
        lease_seconds: int,
    ) -> Optional[AuthorizationRequestParameters]:
        now_dt = datetime.now(timezone.utc)
        now = to_iso(now_dt)
        stale = to_iso(now_dt - timedelta(seconds=lease_seconds))
        condition = (
            Attr("provider_key").eq(provider_key)
            & Attr("state").eq(HandshakeState.INITIATED.value)
            & Attr("expires_at").gt(now)
            & (Attr("claimed_at").not_exists() | Attr("claimed_at").lte(stale))
        )
        try:
            response = self._table.update_item(
                Key=self._key(state_key),
                UpdateExpression="SET claimed_at = :claimed_at",
                ExpressionAttributeValues={":claimed_at": now},
                ConditionExpression=condition,
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if _is_condition_failure(exc):
                return None
            raise
        return self._item_to_record(response["Attributes"])

    def release(self, state_key: str) -> None:
        try:
            self._table.update_item(
                Key=self._key(state_key),
                UpdateExpression="REMOVE claimed_at",
                ConditionExpression=Attr("state").eq(HandshakeState.INITIATED.value),
            )
        except ClientError as exc:
            if not _is_condition_failure(exc):
                raise

    def finish(self, state_key: str, state: HandshakeState) -> bool:
        if state is HandshakeState.INITIATED:
            raise ValueError("finish() requires a terminal state.")
        try:
            self._table.update_item(
                Key=self._key(state_key),
                UpdateExpression="SET #handshake_state = :terminal",
                ExpressionAttributeNames={"#handshake_state": "state"},
                ExpressionAttributeValues={":terminal": state.value},
                ConditionExpression=Attr("state").eq(HandshakeState.INITIATED.value),
            )
        except ClientError as exc:
            if _is_condition_failure(exc):
                return False
            raise
        return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        threshold = to_iso(now or datetime.now(timezone.utc))
        scan_kwargs: Dict[str, Any] = {
            "FilterExpression": Attr("sk").eq(_REQUEST_SK)
            & Attr("expires_at").lte(threshold),
            "ProjectionExpression": "pk, sk",
        }
        removed = 0
        while True:
            response = self._table.scan(**scan_kwargs)
            for item in response.get("Items", []):
                self._table.delete_item(Key={"pk": item["pk"], "sk": item["sk"]})
                # The credential marker only guards replays of this handshake.
                self._table.delete_item(Key={"pk": item["pk"], "sk": _MARKER_SK})
                removed += 1
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return removed
            scan_kwargs["ExclusiveStartKey"] = last_key

    @staticmethod
    def _item_to_record(item: Dict[str, Any]) -> AuthorizationRequestParameters:
        return AuthorizationRequestParameters(
            state_key=item["state_key"],
            user_id=item["user_id"],
            provider_key=item["provider_key"],
            client_redirect_url=item.get("client_redirect_url"),
            authorization_url=item["authorization_url"],
            request_fields=json.loads(item.get("request_fields") or "{}"),
            state=HandshakeState(item["state"]),
            created_at=from_iso(item["created_at"]),
            expires_at=from_iso(item.get("expires_at")),
            claimed_at=from_iso(item.get("claimed_at")),
        )


class DynamoDBCredentialStore(CredentialStore):
    """Credential grants stored under the owning user's partition."""

    def __init__(
        self,
        settings: StorageSettings,
        *,
        cipher: TokenCipherService,
        table: Any = None,
        marker_ttl_seconds: Optional[int] = None,
    ) -> None:
        self._cipher = cipher
        self._table = table if table is not None else _table_for(settings)
        self._marker_ttl_seconds = marker_ttl_seconds

    @staticmethod
    def _credential_key(credential: AccessParameters) -> Dict[str, str]:
        return {
            "pk": f"user#{credential.user_id}",
            "sk": (
                f"credential#{credential.provider_key}#{to_iso(credential.created_at)}"
                f"#{time.time_ns():020d}"
            ),
        }

    def _credential_item(
        self, credential: AccessParameters, key: Dict[str, str]
    ) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            **key,
            "credential_id": credential.credential_id,
            "user_id": credential.user_id,
            "provider_key": credential.provider_key,
            "payload_encrypted": self._cipher.encrypt_payload(credential.payload),
            "created_at": to_iso(credential.created_at),
        }
        if credential.state_key:
            item["state_key"] = credential.state_key
        return item

    def save(self, credential: AccessParameters) -> AccessParameters:
        stored = credential.model_copy(
            update={"credential_id": credential.credential_id or uuid4().hex}
        )
        key = self._credential_key(stored)

        if stored.state_key:
            marker_item: Dict[str, Any] = {
                "pk": f"handshake#{stored.state_key}",
                "sk": _MARKER_SK,
                "credential_pk": key["pk"],
                "credential_sk": key["sk"],
            }
            if self._marker_ttl_seconds is not None:
                marker_item["ttl"] = (
                    int(stored.created_at.timestamp()) + self._marker_ttl_seconds
                )
            try:
                self._table.put_item(
                    Item=marker_item,
                    ConditionExpression=Attr("pk").not_exists(),
                )
            except ClientError as exc:
                if not _is_condition_failure(exc):
                    raise
                marker = self._get_marker(stored.state_key)
                existing = self._get_credential_item(marker)
                if existing is not None:
                    return self._item_to_credential(existing)
                if marker is not None:
                    # Marker written but grant lost: reuse the reserved key.
                    key = {"pk": marker["credential_pk"], "sk": marker["credential_sk"]}

        self._table.put_item(Item=self._credential_item(stored, key))
        return stored

    def replace(
        self, previous_credential_id: str, credential: AccessParameters
    ) -> Optional[AccessParameters]:
        previous = next(
            (
                item
                for item in self._query_all(self._owner_condition(credential))
                if item["credential_id"] == previous_credential_id
            ),
            None,
        )
        if previous is None:
            return None

        stored = credential.model_copy(
            update={
                "credential_id": credential.credential_id or uuid4().hex,
                "state_key": None,
            }
        )
        item = self._credential_item(stored, self._credential_key(stored))
        try:
            self._table.meta.client.transact_write_items(
                TransactItems=[
                    {
                        "ConditionCheck": {
                            "TableName": self._table.name,
                            "Key": {
                                "pk": _SERIALIZER.serialize(previous["pk"]),
                                "sk": _SERIALIZER.serialize(previous["sk"]),
                            },
                            "ConditionExpression": "attribute_exists(pk)",
                        }
                    },
                    {
                        "Put": {
                            "TableName": self._table.name,
                            "Item": {
                                name: _SERIALIZER.serialize(value)
                                for name, value in item.items()
                            },
                        }
                    },
                ]
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "TransactionCanceledException":
                return None
            raise
        return stored

    def latest(self, user_id: str, provider_key: str) -> Optional[AccessParameters]:
        response = self._table.query(
            KeyConditionExpression=Key("pk").eq(f"user#{user_id}")
            & Key("sk").begins_with(f"credential#{provider_key}#"),
            ScanIndexForward=False,
            Limit=1,
        )
        items = response.get("Items", [])
        if not items:
            return None
        return self._item_to_credential(items[0])

    def find_by_state_key(
        self, user_id: str, provider_key: str, state_key: str
    ) -> Optional[AccessParameters]:
        marker = self._get_marker(state_key)
        if marker is None:
            return None
        item = self._get_credential_item(marker)
        if item is None:
            return None
        if item["user_id"] != user_id or item["provider_key"] != provider_key:
            return None
        return self._item_to_credential(item)

    def delete_all(self, user_id: str, provider_key: str) -> int:
        condition = Key("pk").eq(f"user#{user_id}") & Key("sk").begins_with(
            f"credential#{provider_key}#"
        )
        removed = 0
        # Query again until empty: a replace that committed before its source
        # grant was deleted shows up in the next pass.
        while True:
            items = self._query_all(condition)
            if not items:
                return removed
            with self._table.batch_writer() as batch:
                for item in items:
                    batch.delete_item(Key={"pk": item["pk"], "sk": item["sk"]})
                    if item.get("state_key"):
                        batch.delete_item(
                            Key={"pk": f"handshake#{item['state_key']}", "sk": _MARKER_SK}
                        )
            removed += len(items)

    @staticmethod
    def _owner_condition(credential: AccessParameters) -> Any:
        return Key("pk").eq(f"user#{credential.user_id}") & Key("sk").begins_with(
            f"credential#{credential.provider_key}#"
        )

    def list_for_user(self, user_id: str) -> List[AccessParameters]:
        items = self._query_all(
            Key("pk").eq(f"user#{user_id}") & Key("sk").begins_with("credential#")
        )
        credentials = [self._item_to_credential(item) for item in items]
        credentials.sort(key=lambda credential: credential.created_at, reverse=True)
        return credentials

    def _query_all(self, key_condition: Any) -> List[Dict[str, Any]]:
        query_kwargs: Dict[str, Any] = {"KeyConditionExpression": key_condition}
        items: List[Dict[str, Any]] = []
        while True:
            response = self._table.query(**query_kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            query_kwargs["ExclusiveStartKey"] = last_key

    def _get_marker(self, state_key: str) -> Optional[Dict[str, Any]]:
        response = self._table.get_item(
            Key={"pk": f"handshake#{state_key}", "sk": _MARKER_SK}
        )
        return response.get("Item")

    def _get_credential_item(
        self, marker: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        if not marker:
            return None
        response = self._table.get_item(
            Key={"pk": marker["credential_pk"], "sk": marker["credential_sk"]}
        )
        return response.get("Item")

    def _item_to_credential(self, item: Dict[str, Any]) -> AccessParameters:
        return AccessParameters(
            credential_id=item["credential_id"],
            user_id=item["user_id"],
            provider_key=item["provider_key"],
            payload=self._cipher.decrypt_payload(item["payload_encrypted"]),
            state_key=item.get("state_key"),
            created_at=from_iso(item["created_at"]),
        )


__all__ = ["DynamoDBCorrelationStore", "DynamoDBCredentialStore"]
