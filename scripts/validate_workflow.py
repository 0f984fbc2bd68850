"""Script to validate a workflow definition

Usage:
    python scripts/validate_workflow.py path/to/definition.json
    python scripts/validate_workflow.py --service <service_key>   (reads MongoDB)
"""
import json
import sys
from typing import Any, Dict, List

from requestflow.domain.errors import WorkflowValidationError
from requestflow.engine.graph import parse_definition, validate_definition


def load_document(args: List[str]) -> Dict[str, Any]:
    if args[0] == "--service":
        from requestflow.repositories.mongo_store import MongoStore
        document = MongoStore().load_definition(args[1])
        if document is None:
            raise SystemExit(f"❌ No workflow stored for service {args[1]}")
        return document
    with open(args[0], encoding="utf-8") as f:
        return json.load(f)


def validate_workflow(document: Dict[str, Any]) -> bool:
    try:
        definition = parse_definition(document)
    except WorkflowValidationError as e:
        print("❌ DEFINITION DOES NOT MATCH THE SCHEMA")
        for issue in e.details.get("errors", []):
            print(f"   • {issue['path']}: {issue['message']}")
        return False

    print("=" * 60)
    print("WORKFLOW ANALYSIS")
    print("=" * 60)

    kinds: Dict[str, int] = {}
    for node in definition.nodes:
        kinds[node.kind.value] = kinds.get(node.kind.value, 0) + 1

    print(f"\n📊 NODE SUMMARY ({len(definition.nodes)} total, version {definition.version}):")
    for kind, count in kinds.items():
        print(f"   • {kind}: {count}")

    print(f"\n🔗 EDGES: {len(definition.edges)}")
    for edge in definition.edges:
        guard = ""
        if edge.is_reject:
            guard = " [reject]"
        elif edge.condition is not None:
            guard = f" [if {edge.condition if isinstance(edge.condition, str) else edge.condition.model_dump()}]"
        print(f"   {edge.source} --> {edge.target}{guard}")

    result = validate_definition(definition)

    print("\n" + "=" * 60)
    print("VALIDATION RESULTS")
    print("=" * 60)

    if result["errors"]:
        print("\n❌ ERRORS:")
        for issue in result["errors"]:
            print(f"   • [{issue['type']}] {issue['message']}")

    if result["warnings"]:
        print("\n⚠️ WARNINGS:")
        for issue in result["warnings"]:
            print(f"   • [{issue['type']}] {issue['message']}")

    if result["is_valid"] and not result["warnings"]:
        print("\n🎉 WORKFLOW IS VALID!")
    elif result["is_valid"]:
        print("\n✅ WORKFLOW IS VALID (with warnings)")
    else:
        print("\n❌ WORKFLOW HAS ERRORS")
    return result["is_valid"]


if __name__ == "__main__":
    if len(sys.argv) < 2:
        raise SystemExit(__doc__)
    sys.exit(0 if validate_workflow(load_document(sys.argv[1:])) else 1)
