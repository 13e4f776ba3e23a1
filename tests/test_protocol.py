"""Tests for wire messages and the payload codec."""
import base64
import json

import pytest
from pydantic import ValidationError

from dispers.shared.codec import PayloadCodec
from dispers.shared.errors import (
    EncryptionUnavailableError,
    MalformedPatchError,
    PayloadDecodeError,
    UnknownRoleError,
)
from dispers.shared.protocol import (
    AggregationFunction,
    AggregatorPartial,
    Concept,
    InputPatchQuery,
    InputT,
    InputTF,
    Instance,
    LayerDA,
    LocalQuery,
    OutputDA,
    OutputT,
    StackQuery,
    TargetPartial,
)


class TestMessages:
    """Field names and byte encoding on the wire."""

    def test_bytes_travel_as_base64(self):
        concept = Concept(enc_concept=b"age", hash=b"\x00\xff")
        wire = concept.to_wire()
        assert wire == {
            "enc_concept": base64.b64encode(b"age").decode(),
            "hash": base64.b64encode(b"\x00\xff").decode(),
        }
        assert Concept.model_validate(wire) == concept

    def test_invalid_base64_rejected(self):
        with pytest.raises(ValidationError):
            Concept.model_validate({"enc_concept": "not base64!"})

    def test_empty_fields_omitted(self):
        assert Concept().to_wire() == {}
        assert InputTF().to_wire() == {"is_encrypted": False}

    def test_target_finder_input_aliases(self):
        wire = {
            "is_encrypted": False,
            "enc_instances": {"A": base64.b64encode(b'["x"]').decode()},
            "enc_operation": base64.b64encode(b'{"type": 0, "value": "A"}').decode(),
            "metadata_task": {"opaque": [1, 2]},
        }
        message = InputTF.model_validate(wire)
        assert message.enc_instances == {"A": b'["x"]'}
        assert message.task_metadata == {"opaque": [1, 2]}
        assert message.to_wire() == wire

    def test_target_input_from_json(self):
        text = json.dumps({"conductor_url": "http://conductor", "queryid": "q1"})
        message = InputT.model_validate_json(text)
        assert message.query_id == "q1"
        assert message.is_encrypted is False
        assert message.to_wire()["queryid"] == "q1"

    def test_stack_query_wire_names(self):
        query = StackQuery(
            domain="alice.mycozy.cloud",
            token_bearer="tok",
            query_id="q1",
            number_of_targets=3,
            local_query=LocalQuery(doctype="io.cozy.bank.operations"),
        )
        wire = query.to_wire()
        assert wire["queryid"] == "q1"
        assert wire["number_targets"] == 3
        assert wire["local_query"]["findrequest"] == {"selector": {}}
        assert wire["local_query"]["doctype"] == "io.cozy.bank.operations"

    def test_aggregation_id_is_a_pair(self):
        output = OutputDA(results={"sum": 1}, query_id="q1", aggregation_id=(1, 0))
        assert output.to_wire()["aggregationid"] == [1, 0]
        assert OutputDA.model_validate({"aggregationid": [2, 3]}).aggregation_id == (2, 3)

    def test_aggregation_function_wire_name(self):
        function = AggregationFunction(function="sum", args={"key": "amount"})
        assert function.to_wire() == {"func": "sum", "args": {"key": "amount"}}

    def test_layer_wire_names(self):
        layer = LayerDA.model_validate({
            "layer_size": 2,
            "layer_jobs": [{"job": "sum", "args": {"key": "amount"}}],
        })
        assert layer.size == 2
        assert layer.jobs[0].job == "sum"
        with pytest.raises(ValidationError):
            LayerDA.model_validate({"layer_size": 0})


class TestInstance:

    def test_address_round_trip(self):
        instance = Instance(domain="alice.mycozy.cloud", token_bearer="tok", version=2)
        assert Instance.from_address(instance.address) == instance

    def test_address_is_canonical(self):
        a = Instance(domain="d", token_bearer="t", version=1)
        b = Instance.model_validate({"version": 1, "token_bearer": "t", "domain": "d"})
        assert a.address == b.address

    @pytest.mark.parametrize("address", ["not json", '{"domain": "d"}', "[]"])
    def test_invalid_address(self, address):
        with pytest.raises(PayloadDecodeError):
            Instance.from_address(address)


class TestPatch:
    """The role-keyed patch becomes a tagged variant."""

    def test_target_patch(self):
        patch = InputPatchQuery.model_validate({
            "role": "t",
            "output_t": {"data": [{"amount": 1}], "queryid": "q1"},
        })
        result = patch.to_role_result()
        assert isinstance(result, TargetPartial)
        assert result.output.data == [{"amount": 1}]

    def test_aggregator_patch(self):
        patch = InputPatchQuery.model_validate({
            "role": "da",
            "output_da": {"results": {"sum": 3}, "queryid": "q1", "aggregationid": [0, 1]},
        })
        result = patch.to_role_result()
        assert isinstance(result, AggregatorPartial)
        assert result.output.aggregation_id == (0, 1)

    def test_unknown_role(self):
        with pytest.raises(UnknownRoleError):
            InputPatchQuery(role="ci").to_role_result()

    @pytest.mark.parametrize("role", ["t", "da"])
    def test_missing_payload(self, role):
        with pytest.raises(MalformedPatchError):
            InputPatchQuery(role=role).to_role_result()

    def test_from_role_result(self):
        result = TargetPartial(OutputT(data=[], query_id="q1"))
        patch = InputPatchQuery.from_role_result(result)
        assert patch.role == "t"
        assert patch.to_role_result() == result


class TestPayloadCodec:

    def test_plaintext_is_json(self):
        codec = PayloadCodec()
        blob = codec.seal(["x", "y"], is_encrypted=False)
        assert json.loads(blob) == ["x", "y"]
        assert codec.open(blob, is_encrypted=False) == ["x", "y"]

    def test_encrypted_without_cipher(self):
        codec = PayloadCodec()
        with pytest.raises(EncryptionUnavailableError):
            codec.seal(["x"], is_encrypted=True)
        with pytest.raises(EncryptionUnavailableError):
            codec.open(b"...", is_encrypted=True)

    def test_encrypted_round_trip(self, cipher):
        codec = PayloadCodec(cipher)
        blob = codec.seal({"type": 0, "value": "A"}, is_encrypted=True)
        assert blob != json.dumps({"type": 0, "value": "A"}).encode()
        assert codec.open(blob, is_encrypted=True) == {"type": 0, "value": "A"}

    def test_missing_payload(self):
        with pytest.raises(PayloadDecodeError, match="Missing operation"):
            PayloadCodec().open(None, is_encrypted=False, what="operation")

    def test_invalid_json(self):
        with pytest.raises(PayloadDecodeError):
            PayloadCodec().open(b"{oops", is_encrypted=False)

    def test_deeply_nested_json(self):
        blob = b"[" * 100000 + b"]" * 100000
        with pytest.raises(PayloadDecodeError):
            PayloadCodec().open(blob, is_encrypted=False)
