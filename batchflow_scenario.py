# batchflow_scenario.py
# Nightly warehouse load: stage input files, load them, then publish
from __future__ import annotations
from batchflow import dsl


def scenario():
    return dsl.scenario(
        "nightly-load",

        # Read the business date written by the upstream export
        dsl.extract(
            "business-date",
            "${EXPORT_DIR}/manifest.txt",
            r"(?m)^business_date=(\d{4}-\d{2}-\d{2})$",
            "BUSINESS_DATE",
        ),

        # Staging table is rebuilt on every run
        dsl.sql(
            "truncate-stage",
            "TRUNCATE TABLE stage_orders",
            needs=["business-date"],
        ),

        # One sqlldr run per exported file
        dsl.loop(
            "load-files",
            "${EXPORT_DIR}/orders_*.dat",
            "DATA_FILE",
            dsl.sqlldr(
                "load",
                "ctl/stage_orders.ctl",
                data_file="${DATA_FILE}",
                bad_file="${DATA_FILE}.bad",
            ),
            needs=["truncate-stage"],
        ),

        # Independent housekeeping, may overlap with the load
        dsl.sh(
            "archive-logs",
            "find logs -name '*.log' -mtime +7 -delete",
            parallel=True,
            ignore_errors=True,
        ),

        dsl.sql_file(
            "publish",
            "sql/publish_orders.sql",
            needs=["load-files"],
            retry=2,
            timeout=600,
            confirm=dsl.confirm(
                message_before="Publish orders for ${BUSINESS_DATE}?",
                default="yes",
            ),
        ),
    )
