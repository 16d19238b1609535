"""
Reporting engine.

Pure aggregations over documents already loaded from the store. Nothing in
this module writes.
"""

import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from schemas import ITEM_STATUSES, WASTE_TYPES

AGE_BUCKETS = ("0-2 years", "3-5 years", "6-8 years", "9+ years")
TOP_CONTRIBUTORS = 10


def _round_percent(part: int, total: int) -> int:
    if not total:
        return 0
    return int(math.floor(part / total * 100 + 0.5))


def _breakdown(items: List[dict], key) -> Dict:
    result: Dict = {}
    for item in items:
        value = key(item) if callable(key) else item.get(key)
        entry = result.setdefault(value, {"count": 0, "weight": 0})
        entry["count"] += 1
        entry["weight"] += item.get("weight", 0)
    return result


def _grouped(items: List[dict], key: str) -> List[dict]:
    """[{_id, count, weight}] grouped on `key`, sorted by count desc."""
    groups = [{"_id": k, **v} for k, v in _breakdown(items, key).items()]
    return sorted(groups, key=lambda g: g["count"], reverse=True)


def _impact(items: List[dict]) -> dict:
    co2 = 0
    landfill = 0
    for item in items:
        impact = item.get("environmentalImpact") or {}
        co2 += impact.get("co2Saved") or 0
        landfill += impact.get("landfillWasteReduced") or 0
    return {"co2Saved": co2, "landfillWasteReduced": landfill}


def _total_weight(items: List[dict]) -> float:
    return sum(item.get("weight", 0) for item in items)


# -----------------------------
# Stats overviews
# -----------------------------

def ewaste_overview(items: List[dict]) -> dict:
    def count(field, value):
        return sum(1 for i in items if i.get(field) == value)

    return {
        "overview": {
            "totalItems": len(items),
            "totalWeight": _total_weight(items),
            "recyclableItems": count("type", "recyclable"),
            "reusableItems": count("type", "reusable"),
            "hazardousItems": count("type", "hazardous"),
            "recycledItems": count("status", "recycled"),
        },
        "departmentStats": _grouped(items, "department"),
        "categoryStats": _grouped(items, "category"),
    }


def campaign_overview(campaigns: List[dict], upcoming: List[dict]) -> dict:
    type_stats: Dict[str, dict] = {}
    for c in campaigns:
        entry = type_stats.setdefault(c.get("type"), {"_id": c.get("type"), "count": 0, "participants": 0})
        entry["count"] += 1
        entry["participants"] += len(c.get("participants", []))
    return {
        "overview": {
            "totalCampaigns": len(campaigns),
            "activeCampaigns": sum(1 for c in campaigns if c.get("status") == "active"),
            "completedCampaigns": sum(1 for c in campaigns if c.get("status") == "completed"),
            "totalParticipants": sum(len(c.get("participants", [])) for c in campaigns),
        },
        "typeStats": list(type_stats.values()),
        "upcomingCampaigns": upcoming,
    }


def user_overview(users: List[dict]) -> dict:
    total_score = sum(u.get("greenScore", 0) for u in users)
    departments: Dict[str, dict] = {}
    for u in users:
        entry = departments.setdefault(u.get("department"), {
            "userCount": 0, "totalGreenScore": 0, "totalContribution": 0,
        })
        entry["userCount"] += 1
        entry["totalGreenScore"] += u.get("greenScore", 0)
        entry["totalContribution"] += u.get("totalContribution", 0)

    department_stats = []
    for department, entry in departments.items():
        department_stats.append({
            "_id": department,
            "userCount": entry["userCount"],
            "avgGreenScore": entry["totalGreenScore"] / entry["userCount"],
            "totalContribution": entry["totalContribution"],
        })
    department_stats.sort(key=lambda d: d["avgGreenScore"], reverse=True)

    return {
        "overview": {
            "totalUsers": len(users),
            "totalGreenScore": total_score,
            "totalContribution": sum(u.get("totalContribution", 0) for u in users),
            "avgGreenScore": total_score / len(users) if users else 0,
        },
        "departmentStats": department_stats,
    }


# -----------------------------
# Admin reports
# -----------------------------

def compliance_report(items: List[dict], start_date: Optional[str] = None, end_date: Optional[str] = None) -> dict:
    recycled = sum(1 for i in items if i.get("status") == "recycled")
    return {
        "period": {"startDate": start_date, "endDate": end_date},
        "totalItems": len(items),
        "totalWeight": _total_weight(items),
        "categoryBreakdown": _breakdown(items, "category"),
        "departmentBreakdown": _breakdown(items, "department"),
        "statusBreakdown": _breakdown(items, "status"),
        "environmentalImpact": _impact(items),
        # An empty period has nothing out of compliance
        "complianceScore": _round_percent(recycled, len(items)),
    }


def _age_bucket(age: float) -> str:
    if age <= 2:
        return AGE_BUCKETS[0]
    if age <= 5:
        return AGE_BUCKETS[1]
    if age <= 8:
        return AGE_BUCKETS[2]
    return AGE_BUCKETS[3]


def inventory_audit(items: List[dict], users: Dict[str, dict]) -> dict:
    by_age = {bucket: 0 for bucket in AGE_BUCKETS}
    by_type = {t: 0 for t in WASTE_TYPES}
    by_status = {s: 0 for s in ITEM_STATUSES}
    contributors: Dict[str, dict] = {}

    for item in items:
        by_age[_age_bucket(item.get("age", 0))] += 1
        by_type[item["type"]] = by_type.get(item["type"], 0) + 1
        by_status[item["status"]] = by_status.get(item["status"], 0) + 1

        reporter = users.get(item.get("reportedBy")) or {}
        entry = contributors.setdefault(item.get("reportedBy"), {
            "username": reporter.get("username"),
            "department": reporter.get("department"),
            "count": 0,
            "weight": 0,
        })
        entry["count"] += 1
        entry["weight"] += item.get("weight", 0)

    recommendations = []
    if by_status["reported"] > by_status["assessed"]:
        recommendations.append("Increase assessment capacity to reduce backlog")
    if by_age["9+ years"] > len(items) * 0.3:
        recommendations.append("Prioritize disposal of items older than 9 years")
    if by_type["hazardous"] > 0:
        recommendations.append("Ensure proper handling of hazardous materials")

    top = sorted(contributors.values(), key=lambda c: c["count"], reverse=True)[:TOP_CONTRIBUTORS]
    return {
        "totalItems": len(items),
        "itemsByAge": by_age,
        "itemsByType": by_type,
        "itemsByStatus": by_status,
        "topContributors": top,
        "recommendations": recommendations,
    }


def _timeline_from_history(item: dict, users: Dict[str, dict]) -> List[dict]:
    reporter = users.get(item.get("reportedBy")) or {}
    timeline = []
    for entry in item["statusHistory"]:
        if entry.get("status") == "reported" and not timeline:
            timeline.append({
                "date": entry.get("at"),
                "action": "Item reported",
                "user": reporter.get("username"),
                "department": reporter.get("department"),
                "status": "reported",
            })
            continue
        actor = users.get(entry.get("by")) or {}
        timeline.append({
            "date": entry.get("at"),
            "action": f"Status updated to {entry.get('status')}",
            "user": actor.get("username", "System"),
            "department": actor.get("department", "N/A"),
            "status": entry.get("status"),
        })
    return timeline


def _synthesized_timeline(item: dict, users: Dict[str, dict]) -> List[dict]:
    # Approximation for items without recorded history
    reporter = users.get(item.get("reportedBy")) or {}
    timeline = [{
        "date": item.get("createdAt"),
        "action": "Item reported",
        "user": reporter.get("username"),
        "department": reporter.get("department"),
        "status": "reported",
    }]
    if item.get("status") != "reported":
        timeline.append({
            "date": item.get("updatedAt"),
            "action": f"Status updated to {item.get('status')}",
            "user": "System",
            "department": "N/A",
            "status": item.get("status"),
        })
    return timeline


def traceability_report(item: dict, users: Dict[str, dict]) -> dict:
    if item.get("statusHistory"):
        timeline = _timeline_from_history(item, users)
    else:
        timeline = _synthesized_timeline(item, users)

    if item.get("scheduledPickup"):
        timeline.append({
            "date": item["scheduledPickup"],
            "action": "Pickup scheduled",
            "user": "Admin",
            "department": "N/A",
            "status": "scheduled",
        })
    if item.get("vendor"):
        vendor = users.get(item["vendor"]) or {}
        timeline.append({
            "date": item.get("updatedAt"),
            "action": "Vendor assigned",
            "user": vendor.get("username"),
            "department": "Vendor",
            "status": item.get("status"),
        })

    return {
        "itemId": item.get("itemId"),
        "name": item.get("name"),
        "category": item.get("category"),
        "type": item.get("type"),
        "timeline": timeline,
        "currentStatus": item.get("status"),
        "location": item.get("location"),
        "environmentalImpact": item.get("environmentalImpact"),
        "qrCode": item.get("qrCode"),
    }


def month_bounds(year: int, month: int) -> Tuple[datetime, datetime]:
    """Start of the month and start of the next month, in UTC."""
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def monthly_summary(items: List[dict], year: int, month: int) -> dict:
    return {
        "period": {"year": year, "month": month},
        "totalItems": len(items),
        "totalWeight": _total_weight(items),
        "dailyBreakdown": _breakdown(items, lambda i: i["createdAt"].day),
        "categoryBreakdown": _breakdown(items, "category"),
        "departmentBreakdown": _breakdown(items, "department"),
        "environmentalImpact": _impact(items),
    }
