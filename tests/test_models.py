"""
Tests for wire decoding of messages and agents.
"""

import json
from datetime import datetime, timezone

import pytest

from openpond.errors import SerializationError
from openpond.models import (
    Message,
    Agent,
    SendOptions,
    parse_messages,
    parse_agents,
    parse_timestamp,
    format_timestamp,
)


def wire_message(**overrides):
    data = {
        'id': 'm1',
        'sender': 'alice',
        'recipient': 'bob',
        'content': 'hello',
        'timestamp': 1700000000000,
    }
    data.update(overrides)
    return data


class TestTimestamps:

    def test_epoch_milliseconds(self):
        assert parse_timestamp(1700000000000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    def test_numeric_string(self):
        assert parse_timestamp("1700000000000") == parse_timestamp(1700000000000)

    def test_iso_string_with_z(self):
        parsed = parse_timestamp("2024-01-02T03:04:05Z")
        assert parsed == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_naive_iso_string_is_utc(self):
        assert parse_timestamp("2024-01-02T03:04:05").tzinfo is not None

    def test_garbage_rejected(self):
        with pytest.raises(SerializationError):
            parse_timestamp("yesterday")

    def test_format_inverts_parse(self):
        assert format_timestamp(parse_timestamp(1700000000123)) == 1700000000123


class TestMessage:

    def test_from_dict(self):
        message = Message.from_dict(wire_message(reply_to='m0', metadata={'k': 'v'}))

        assert message.id == 'm1'
        assert message.sender == 'alice'
        assert message.recipient == 'bob'
        assert message.content == 'hello'
        assert message.reply_to == 'm0'
        assert message.metadata['k'] == 'v'

    def test_camel_case_aliases(self):
        data = {
            'id': 'm1',
            'fromAgentId': 'alice',
            'toAgentId': 'bob',
            'content': 'hello',
            'ts': 5,
            'replyTo': 'm0',
        }
        message = Message.from_dict(data)

        assert message.sender == 'alice'
        assert message.recipient == 'bob'
        assert message.reply_to == 'm0'

    def test_snake_case_agent_aliases(self):
        message = Message.from_dict({
            'id': 'm1', 'from_agent_id': 'alice', 'to_agent_id': 'bob',
            'content': '', 'ts': 1,
        })
        assert (message.sender, message.recipient) == ('alice', 'bob')

    @pytest.mark.parametrize("data", [
        {'sender': 'a', 'recipient': 'b', 'content': 'x', 'ts': 1},
        {'id': '', 'sender': 'a', 'recipient': 'b', 'content': 'x', 'ts': 1},
        {'id': 'm1', 'sender': 'a', 'recipient': 'b', 'ts': 1},
        {'id': 'm1', 'sender': 'a', 'recipient': 'b', 'content': 'x'},
        {'id': 'm1', 'sender': 'a', 'recipient': 'b', 'content': 42, 'ts': 1},
        {'id': 'm1', 'sender': 'a', 'recipient': 'b', 'content': 'x', 'ts': 1, 'metadata': 'flat'},
        ['not', 'an', 'object'],
    ])
    def test_malformed_rejected(self, data):
        with pytest.raises(SerializationError):
            Message.from_dict(data)

    @pytest.mark.parametrize("data", [
        {'id': 'm1', 'recipient': 'bob', 'content': 'x', 'ts': 1},
        {'id': 'm1', 'sender': 'alice', 'content': 'x', 'ts': 1},
        {'id': 'm1', 'sender': '', 'recipient': 'bob', 'content': 'x', 'ts': 1},
        {'id': 'm1', 'sender': None, 'recipient': 'bob', 'content': 'x', 'ts': 1},
        {'id': 'm1', 'fromAgentId': 'alice', 'to_agent_id': '', 'content': 'x', 'ts': 1},
    ])
    def test_sender_and_recipient_required(self, data):
        with pytest.raises(SerializationError):
            Message.from_dict(data)

    def test_error_lists_every_violation(self):
        with pytest.raises(SerializationError) as exc_info:
            Message.from_dict({'id': 7, 'content': 8, 'ts': 1})
        assert '/id' in str(exc_info.value)
        assert '/content' in str(exc_info.value)

    def test_from_json_rejects_invalid_json(self):
        with pytest.raises(SerializationError) as exc_info:
            Message.from_json("{not json")
        assert exc_info.value.payload == "{not json"

    def test_immutable(self):
        message = Message.from_dict(wire_message(metadata={'k': 'v'}))
        with pytest.raises(AttributeError):
            message.content = "changed"
        with pytest.raises(TypeError):
            message.metadata['k'] = 'changed'

    def test_sort_key_breaks_ties_by_id(self):
        a = Message.from_dict(wire_message(id='a'))
        b = Message.from_dict(wire_message(id='b'))
        assert a.sort_key < b.sort_key

    def test_to_dict(self):
        data = wire_message(reply_to='m0')
        assert Message.from_dict(data).to_dict() == data


class TestParseMessages:

    def test_bare_list(self):
        assert [m.id for m in parse_messages([wire_message()]).messages] == ['m1']

    def test_wrapped_list(self):
        assert len(parse_messages({'messages': [wire_message()]}).messages) == 1

    def test_malformed_entries_dropped(self, caplog):
        data = [wire_message(id='good'), {'id': 'bad'}, wire_message(id='also-good')]

        with caplog.at_level("WARNING"):
            result = parse_messages(data)

        assert [m.id for m in result.messages] == ['good', 'also-good']
        assert len(result.dropped) == 1
        assert isinstance(result.dropped[0], SerializationError)
        assert "Dropping malformed message" in caplog.text

    def test_non_list_rejected(self):
        with pytest.raises(SerializationError):
            parse_messages({'unexpected': True})


class TestAgents:

    def test_from_dict(self):
        agent = Agent.from_dict({'id': 'a1', 'name': 'alpha', 'lastSeen': 1700000000000})
        assert agent.name == 'alpha'
        assert agent.last_seen.year == 2023

    def test_name_optional(self):
        assert Agent.from_dict({'id': 'a1'}).name is None

    def test_missing_id_rejected(self):
        with pytest.raises(SerializationError):
            Agent.from_dict({'name': 'nameless'})

    def test_parse_both_shapes(self):
        agents = [{'id': 'a1'}, {'id': 'a2', 'name': 'beta'}]
        assert [a.id for a in parse_agents(agents)] == ['a1', 'a2']
        assert [a.id for a in parse_agents({'agents': agents})] == ['a1', 'a2']

    def test_parse_rejects_non_list(self):
        with pytest.raises(SerializationError):
            parse_agents("nope")

    def test_to_dict_is_json_serializable(self):
        agent = Agent.from_dict({'id': 'a1', 'last_seen': 5, 'metadata': {'x': 1}})
        assert json.loads(json.dumps(agent.to_dict()))['metadata'] == {'x': 1}


class TestSendOptions:

    def test_empty_options(self):
        assert SendOptions().to_dict() == {}

    def test_options_included(self):
        options = SendOptions(reply_to='m0', metadata={'priority': 'high'})
        assert options.to_dict() == {'reply_to': 'm0', 'metadata': {'priority': 'high'}}
