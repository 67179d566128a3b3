#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from google.cloud import firestore

from concierge.runtime import RuntimeConfig
from concierge.runtime.settings import normalize_gas_topup_policy
from concierge.storage import StorageSettings
from concierge.storage.firestore_ops import resolve_config_doc_path


def parse_args(storage: StorageSettings, defaults: RuntimeConfig) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Write the operator runtime config document the concierge service watches.",
    )
    parser.add_argument("--project-id", default=storage.firestore_project_id or "")
    parser.add_argument(
        "--config-doc",
        default=storage.firestore_config_doc,
        help="Document path; a collection path gets --leaf-doc-id appended.",
    )
    parser.add_argument("--leaf-doc-id", default=storage.firestore_config_leaf_doc_id)
    parser.add_argument("--replace", action="store_true", help="Overwrite the document instead of merging.")
    parser.add_argument("--print-only", action="store_true", help="Show the payload without writing it.")

    parser.add_argument("--schema-version", type=int, default=defaults.config_schema_version)
    parser.add_argument(
        "--execution",
        choices=("enabled", "disabled"),
        default="enabled" if defaults.execution_enabled else "disabled",
    )
    parser.add_argument(
        "--signature-bypass",
        action="store_true",
        help="Accept unsigned webhooks. Every use is reported as a critical audit event.",
    )
    parser.add_argument("--max-gas-price-gwei", type=float, default=defaults.max_gas_price_gwei)
    parser.add_argument(
        "--gas-topup-policy",
        choices=("best_effort", "required", "skip"),
        default=defaults.gas_topup_policy,
    )
    parser.add_argument("--refund-cooldown-hours", type=float, default=defaults.refund_cooldown_hours)
    return parser.parse_args()


def build_payload(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "schema_version": max(1, args.schema_version),
        "execution_enabled": args.execution == "enabled",
        "emergency_signature_bypass": bool(args.signature_bypass),
        "max_gas_price_gwei": max(0.0, args.max_gas_price_gwei),
        "gas_topup_policy": normalize_gas_topup_policy(args.gas_topup_policy),
        "refund_cooldown_hours": max(0.0, args.refund_cooldown_hours),
    }


def main() -> None:
    load_dotenv(Path(__file__).resolve().parents[1] / ".env")
    credentials = os.getenv("FIREBASE_CREDENTIALS")
    if credentials:
        os.environ.setdefault("GOOGLE_APPLICATION_CREDENTIALS", credentials)

    args = parse_args(StorageSettings.from_env(), RuntimeConfig.from_env_defaults())
    doc_path, completed = resolve_config_doc_path(args.config_doc, args.leaf_doc_id)
    payload = build_payload(args)

    if completed:
        print(f"[info] '{args.config_doc}' is a collection; writing to '{doc_path}'")
    print(f"[info] doc={doc_path} merge={not args.replace}")
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    if payload["emergency_signature_bypass"]:
        print("[warn] webhook signature verification will be bypassed")

    if args.print_only:
        return
    project_id = args.project_id.strip()
    if not project_id:
        raise SystemExit("FIRESTORE_PROJECT_ID is required (env or --project-id).")

    firestore.Client(project=project_id).document(doc_path).set(payload, merge=not args.replace)
    print("[ok] runtime config written")


if __name__ == "__main__":
    main()
