"""Shared fixtures: a toy cipher, a manual executor and a populated stack."""
from concurrent.futures import Executor

import pytest

from dispers.enclave.stack import InMemoryStack
from dispers.server.registry import InstanceRegistry
from dispers.shared.codec import Cipher
from dispers.shared.protocol import Instance

DOCTYPE = "io.cozy.bank.operations"


class XorCipher(Cipher):
    """Reversible stand-in for the enclave cipher. Not encryption."""

    def __init__(self, key: int = 0x5A):
        self.key = key

    def encrypt(self, plaintext: bytes) -> bytes:
        return bytes(b ^ self.key for b in plaintext)

    def decrypt(self, ciphertext: bytes) -> bytes:
        return bytes(b ^ self.key for b in ciphertext)


class ManualExecutor(Executor):
    """Executor that queues work until the test runs it."""

    def __init__(self):
        self.tasks = []

    def submit(self, fn, *args, **kwargs):
        self.tasks.append((fn, args, kwargs))

    def run_next(self):
        fn, args, kwargs = self.tasks.pop(0)
        fn(*args, **kwargs)

    def run_all(self):
        while self.tasks:
            self.run_next()


ALICE = Instance(domain="alice.mycozy.cloud", token_bearer="tok-alice", version=1)
BOB = Instance(domain="bob.mycozy.cloud", token_bearer="tok-bob", version=1)
CAROL = Instance(domain="carol.mycozy.cloud", token_bearer="tok-carol", version=1)

# Concepts each instance subscribes to
SUBSCRIPTIONS = [
    (ALICE, ["A", "B"]),
    (BOB, ["A", "C"]),
    (CAROL, ["B", "C"]),
]


@pytest.fixture
def cipher():
    return XorCipher()


@pytest.fixture
def manual_executor():
    return ManualExecutor()


@pytest.fixture
def stack():
    return InMemoryStack({
        ALICE.domain: [
            {"doctype": DOCTYPE, "amount": 10, "label": "rent"},
            {"doctype": DOCTYPE, "amount": 20, "label": "food"},
        ],
        BOB.domain: [
            {"doctype": DOCTYPE, "amount": 30, "label": "food"},
        ],
        CAROL.domain: [
            {"doctype": DOCTYPE, "amount": 40, "label": "travel"},
            {"doctype": "io.cozy.files", "amount": 1000},
        ],
    })


@pytest.fixture
def registry():
    return InstanceRegistry()
