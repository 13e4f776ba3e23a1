#!/usr/bin/env python3
"""
Full query pipeline on synthetic data holders.

Demonstrates one query end to end, with every role in this process:
1. Instances subscribe under their concepts
2. Concept Indexer + Target Finder resolve the target profile
3. Targets query their stacks and report rows
4. Two layers of Data Aggregators compute sum / mean / std
"""
import sys
import argparse
from pathlib import Path
from concurrent.futures import ThreadPoolExecutor
import numpy as np

# Add src to path for development
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from dispers.enclave.stack import InMemoryStack
from dispers.server.conductor import Conductor
from dispers.shared.operation_tree import And, Leaf, Or, encode_tree
from dispers.shared.protocol import (
    AggregationJob,
    InputNewQuery,
    Instance,
    LayerDA,
    LocalQuery,
    SubscribeRequest,
)
from dispers.shared.utils import Timer, configure_logging

DOCTYPE = "io.cozy.bank.operations"
CONCEPTS = ["lyon", "paris", "student", "retired"]


def build_population(num_instances: int, rows_per_instance: int, seed: int = 42):
    """Random instances, their concepts and their bank operations."""
    rng = np.random.default_rng(seed)
    documents = {}
    subscriptions = []
    for i in range(num_instances):
        instance = Instance(
            domain=f"user{i}.mycozy.cloud",
            token_bearer=f"token-{i}",
            version=1,
        )
        concepts = [CONCEPTS[rng.integers(0, 2)], CONCEPTS[2 + rng.integers(0, 2)]]
        amounts = rng.normal(100.0, 25.0, size=rows_per_instance)
        documents[instance.domain] = [
            {"doctype": DOCTYPE, "amount": round(float(a), 2)} for a in amounts
        ]
        subscriptions.append((instance, concepts))
    return documents, subscriptions


def run_demo(
    num_instances: int = 200,
    rows_per_instance: int = 50,
    layer_size: int = 4,
    workers: int = 8,
):
    print("=" * 70)
    print("dispers - Full Query Pipeline")
    print("=" * 70)
    print(f"\nConfiguration:")
    print(f"  Instances:          {num_instances}")
    print(f"  Rows per instance:  {rows_per_instance}")
    print(f"  First layer size:   {layer_size}")
    print(f"  Workers:            {workers}")

    documents, subscriptions = build_population(num_instances, rows_per_instance)

    with ThreadPoolExecutor(max_workers=workers) as executor:
        conductor = Conductor.in_process(InMemoryStack(documents), salt="demo", executor=executor)

        print("\n[1] Subscribing instances...")
        with Timer() as t:
            for instance, concepts in subscriptions:
                conductor.subscribe(SubscribeRequest(instance=instance, concepts=concepts))
        print(f"    {len(conductor.registry)} instances registered in {t.elapsed_ms:.0f}ms")

        # (lyon AND student) OR retired
        profile = Or(And(Leaf("lyon"), Leaf("student")), Leaf("retired"))
        jobs = [
            AggregationJob(job="sum", args={"key": "amount"}),
            AggregationJob(job="mean", args={"key": "amount"}),
            AggregationJob(job="std", args={"key": "amount"}),
            AggregationJob(job="count"),
        ]
        request = InputNewQuery(
            concepts=CONCEPTS,
            target_profile=encode_tree(profile),
            local_query=LocalQuery(doctype=DOCTYPE),
            layers_da=[LayerDA(size=layer_size, jobs=jobs), LayerDA(size=1, jobs=jobs)],
        )

        print("\n[2] Running query...")
        with Timer() as t:
            query_id = conductor.new_query(request)
            status = conductor.wait(query_id, timeout=60)
        print(f"    Query {query_id} {status.state.value} in {t.elapsed_ms:.0f}ms")
        print(f"    Targets: {status.number_of_targets}")

    if status.error:
        print(f"\n    Error: {status.error}")
        return status

    results = status.results
    print("\n[3] Results:")
    print(f"    count = {results['count']['length']}")
    print(f"    sum   = {results['sum_amount']['sum']:.2f}")
    print(f"    mean  = {results['mean_amount']['mean']:.2f}")
    print(f"    std   = {results['std_amount']['std']:.2f}")
    return status


def main():
    parser = argparse.ArgumentParser(description="Run the full dispers pipeline on synthetic data")
    parser.add_argument("--instances", type=int, default=200, help="Number of data holders")
    parser.add_argument("--rows", type=int, default=50, help="Rows per data holder")
    parser.add_argument("--layer-size", type=int, default=4, help="Aggregators in the first layer")
    parser.add_argument("--workers", type=int, default=8, help="Worker threads")
    parser.add_argument("--log-level", default="WARNING", help="Log level")
    args = parser.parse_args()

    configure_logging(args.log_level)
    run_demo(
        num_instances=args.instances,
        rows_per_instance=args.rows,
        layer_size=args.layer_size,
        workers=args.workers,
    )


if __name__ == "__main__":
    main()
