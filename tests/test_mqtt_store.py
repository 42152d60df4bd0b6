"""
Unit tests for the MQTT-backed document store.
The paho client is a MagicMock: no broker is needed. Network-thread callbacks
are invoked directly and marshalled onto the running loop by the store.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from gym_enrollment.core.exceptions import StoreConnectionError
from gym_enrollment.mqtt.client import MqttDocumentStore
from gym_enrollment.store.base import SERVER_TIMESTAMP
from helpers import run

PATH = "gyms/g1/devices/d1/commands/enroll"
TOPIC = f"gym/docs/{PATH}"


def make_client(rc=mqtt.MQTT_ERR_SUCCESS):
    client = MagicMock()
    client.publish.return_value = SimpleNamespace(rc=rc)
    return client


def make_store(client=None):
    return MqttDocumentStore("gym/", "localhost", 1883, client=client or make_client())


def message(topic, payload):
    return SimpleNamespace(topic=topic, payload=payload)


def attach_loop(store):
    # What connect() does, minus the broker
    store._loop = asyncio.get_running_loop()
    store._ready = asyncio.Event()


# ============================================================
# Topics and payloads
# ============================================================

def test_topic_path_mapping():
    store = make_store()

    assert store.topic_for(PATH) == TOPIC
    assert store.path_for(TOPIC) == PATH
    with pytest.raises(ValueError):
        store.path_for("other/docs/x")


def test_parse_payload():
    assert MqttDocumentStore.parse_payload(b"") is None
    assert MqttDocumentStore.parse_payload(b'{"status": "pending"}') == {"status": "pending"}
    with pytest.raises(ValueError):
        MqttDocumentStore.parse_payload(b"[1, 2]")


def test_credentials_are_passed_to_client():
    client = make_client()
    MqttDocumentStore("gym", "broker", 1883, "user", "secret", client=client)

    client.username_pw_set.assert_called_once_with("user", "secret")


# ============================================================
# Publishing
# ============================================================

def test_set_publishes_retained_json():
    client = make_client()
    store = make_store(client)

    saved = run(store.set(PATH, {"status": "pending", "createdAt": SERVER_TIMESTAMP}))

    args, kwargs = client.publish.call_args
    assert args[0] == TOPIC
    assert kwargs == {"qos": 1, "retain": True}
    body = json.loads(args[1])
    assert body["status"] == "pending"
    assert body["createdAt"] == saved["createdAt"].isoformat()
    assert run(store.get(PATH))["status"] == "pending"


def test_delete_publishes_empty_retained_payload():
    client = make_client()
    store = make_store(client)
    run(store.set(PATH, {"status": "pending"}))

    run(store.delete(PATH))

    client.publish.assert_called_with(TOPIC, b"", qos=1, retain=True)
    assert run(store.get(PATH)) is None


def test_publish_failure_raises_store_connection_error():
    store = make_store(make_client(rc=mqtt.MQTT_ERR_NO_CONN))

    with pytest.raises(StoreConnectionError):
        run(store.set(PATH, {"status": "pending"}))


def test_update_of_unknown_document_raises():
    with pytest.raises(KeyError):
        run(make_store().update(PATH, {"status": "cancelled"}))


# ============================================================
# Incoming messages and watchers
# ============================================================

def test_incoming_messages_reach_watchers_and_cache():
    async def scenario():
        store = make_store()
        attach_loop(store)
        seen = []
        store.watch(PATH, seen.append)

        store._on_message(None, None, message(TOPIC, b'{"status": "in_progress"}'))
        store._on_message(None, None, message(TOPIC, b"not json"))
        store._on_message(None, None, message(TOPIC, b'{"status": "completed", "fingerprintId": 7}'))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        cached = await store.get(PATH)
        listed = await store.list("gyms/g1/devices/d1/commands")
        return seen, cached, listed

    seen, cached, listed = run(scenario())

    assert seen == [None, {"status": "in_progress"}, {"status": "completed", "fingerprintId": 7}]
    assert cached["fingerprintId"] == 7
    assert listed == [("enroll", cached)]


def test_on_connect_subscribes_to_document_tree():
    async def scenario():
        client = make_client()
        store = make_store(client)
        attach_loop(store)
        store._on_connect(client, None, None, SimpleNamespace(is_failure=False), None)
        await asyncio.wait_for(store._ready.wait(), 1)
        return client

    client = run(scenario())

    client.subscribe.assert_called_once_with("gym/docs/#", qos=1)


def test_unexpected_disconnect_fails_watchers():
    async def scenario():
        store = make_store()
        attach_loop(store)
        errors = []
        store.watch(PATH, lambda doc: None, errors.append)
        store._on_disconnect(None, None, None, "unspecified error", None)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        return errors

    errors = run(scenario())

    assert len(errors) == 1
    assert isinstance(errors[0], StoreConnectionError)
    assert errors[0].kind == "network_error"


def test_disconnect_while_closing_is_quiet():
    async def scenario():
        store = make_store()
        attach_loop(store)
        errors = []
        store.watch(PATH, lambda doc: None, errors.append)
        await store.close()
        store._on_disconnect(None, None, None, "normal", None)
        await asyncio.sleep(0)
        return errors

    assert run(scenario()) == []
