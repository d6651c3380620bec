#!/usr/bin/env python3
"""
Explain why leads are missing from a tenant's sales funnel board.
Prints how many leads exist, how many the board shows, and the exclusion
reason for every hidden lead.
"""

import json
import sys
from pathlib import Path
from typing import Any, Dict

# Add backend to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from app.core.database import SessionLocal
from app.services.lead_service import lead_service


def print_report(analysis: Dict[str, Any], show_excluded: bool = True) -> None:
    print(f"📊 Leads in database:   {analysis['total_leads']}")
    print(f"✅ Visible on board:    {analysis['visible_leads']}")
    print(f"🚫 Excluded from board: {analysis['excluded_leads']}")

    if analysis["stage_counts"]:
        print("\nLeads per stored stage:")
        for stage, count in sorted(analysis["stage_counts"].items()):
            print(f"  {stage:<16} {count}")

    if analysis["exclusion_reasons"]:
        print("\nExclusion reasons:")
        for reason, count in sorted(analysis["exclusion_reasons"].items(), key=lambda item: -item[1]):
            print(f"  {reason:<22} {count}")

    if show_excluded and analysis["excluded"]:
        print("\nExcluded leads:")
        for lead in analysis["excluded"]:
            print(f"  {lead['id']}  {lead['full_name'] or '-':<30} {lead['stage']:<14} {', '.join(lead['reasons'])}")


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Analyze sales funnel visibility for a tenant")
    parser.add_argument("tenant_id", help="Tenant to analyze")
    parser.add_argument("--json", action="store_true", help="Print the raw analysis as JSON")
    parser.add_argument("--summary", action="store_true", help="Omit the per-lead listing")

    args = parser.parse_args()

    db = SessionLocal()
    try:
        analysis = lead_service.analyze_funnel(db, args.tenant_id)
    finally:
        db.close()

    if args.json:
        print(json.dumps(analysis, indent=2, default=str))
    else:
        print_report(analysis, show_excluded=not args.summary)


if __name__ == "__main__":
    main()
