#!/usr/bin/env python3
"""
Create the DynamoDB tables used by the lead email function.

Tables:
  - dedupe records, keyed by thread_id
  - message link tokens, keyed by token
  - lead attribution, keyed by lead_id

Each table is on-demand and expires rows through the ``ttl`` attribute.
"""

import argparse
import os
import sys
from typing import Dict, Optional

import boto3
from botocore.exceptions import ClientError

# Table role -> (environment variable, partition key)
LEAD_TABLES = {
    "dedupe": ("LEAD_DEDUPE_TABLE_NAME", "thread_id"),
    "message_links": ("MESSAGE_LINK_TOKEN_TABLE_NAME", "token"),
    "attribution": ("LEAD_ATTRIBUTION_TABLE_NAME", "lead_id"),
}


def create_lead_table(dynamodb, client, table_name: str, partition_key: str):
    """Create one table if missing and enable TTL. Returns the Table resource."""
    existing_tables = [table.name for table in dynamodb.tables.all()]
    if table_name in existing_tables:
        print(f"Table {table_name} already exists")
        return dynamodb.Table(table_name)

    print(f"Creating table {table_name}...")
    table = dynamodb.create_table(
        TableName=table_name,
        KeySchema=[{"AttributeName": partition_key, "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": partition_key, "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
        Tags=[{"Key": "Component", "Value": "ChatLeadEmail"}],
    )
    table.wait_until_exists()
    print(f"Table {table_name} created: {table.table_arn}")

    try:
        client.update_time_to_live(
            TableName=table_name,
            TimeToLiveSpecification={"Enabled": True, "AttributeName": "ttl"},
        )
        print("TTL enabled on 'ttl' attribute")
    except ClientError as e:
        print(f"Warning: Could not enable TTL on {table_name}: {e}")

    return table


def resolve_table_names(overrides: Dict[str, Optional[str]], environ=None) -> Dict[str, str]:
    """Table name per role from flags, else the function's environment variables."""
    env = os.environ if environ is None else environ
    names = {}
    for role, (env_key, _) in LEAD_TABLES.items():
        name = overrides.get(role) or (env.get(env_key) or "").strip()
        if name:
            names[role] = name
    return names


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create lead email DynamoDB tables")
    parser.add_argument("--region", default=os.getenv("AWS_REGION", "us-east-1"), help="AWS region")
    parser.add_argument("--dedupe-table", help="Dedupe table name (LEAD_DEDUPE_TABLE_NAME)")
    parser.add_argument("--message-link-table", help="Message link table name (MESSAGE_LINK_TOKEN_TABLE_NAME)")
    parser.add_argument("--attribution-table", help="Attribution table name (LEAD_ATTRIBUTION_TABLE_NAME)")
    args = parser.parse_args(argv)

    names = resolve_table_names(
        {
            "dedupe": args.dedupe_table,
            "message_links": args.message_link_table,
            "attribution": args.attribution_table,
        }
    )
    if "dedupe" not in names:
        print("Error: a dedupe table name is required (--dedupe-table or LEAD_DEDUPE_TABLE_NAME)")
        return 1

    dynamodb = boto3.resource("dynamodb", region_name=args.region)
    client = boto3.client("dynamodb", region_name=args.region)
    try:
        for role, table_name in names.items():
            create_lead_table(dynamodb, client, table_name, LEAD_TABLES[role][1])
    except ClientError as e:
        print(f"Error creating tables: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
