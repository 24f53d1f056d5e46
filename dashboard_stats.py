# dashboard_stats.py - Per-employee counters for the admin dashboard

import pandas as pd

from job_board import fetch_joined_jobs
from job_status import ACTIVE_STATUSES, JOB_STATUSES, normalize_status


def _assignment_frame(jobs, contacts):
    rows = []
    for job in jobs or []:
        for user in job.get("assigned_users") or []:
            uid = user.get("user_id")
            if not uid:
                continue
            rows.append({
                "user_id": uid,
                "full_name": user.get("full_name"),
                "contact_number": contacts.get(uid),
                "status": normalize_status(user.get("status")),
                "lot_number": job.get("lot_number"),
                "address": job.get("address"),
            })
    return pd.DataFrame(rows, columns=["user_id", "full_name", "contact_number", "status", "lot_number", "address"])


def calculate_employee_stats(jobs, contacts=None):
    """
    One entry per assigned user, in order of first appearance.
    `active_job` is the first on_way/on_site assignment seen for that user.
    """
    df = _assignment_frame(jobs, contacts or {})
    if df.empty:
        return []

    counts = (
        pd.crosstab(df["user_id"], df["status"])
        .reindex(columns=list(JOB_STATUSES), fill_value=0)
    )
    firsts = df.drop_duplicates("user_id").set_index("user_id")
    active = df[df["status"].isin(ACTIVE_STATUSES)].drop_duplicates("user_id").set_index("user_id")

    stats = []
    for uid in firsts.index:
        row = counts.loc[uid]
        entry = {
            "user_id": uid,
            "full_name": firsts.at[uid, "full_name"],
            "contact_number": firsts.at[uid, "contact_number"],
            "total_jobs": int(row.sum()),
        }
        for status in JOB_STATUSES:
            entry[status] = int(row[status])
        if uid in active.index:
            entry["active_job"] = {
                "lot_number": active.at[uid, "lot_number"],
                "address": active.at[uid, "address"],
                "status": active.at[uid, "status"],
            }
        stats.append(entry)
    return stats


def load_employee_stats(repo, job_date=None):
    jobs = fetch_joined_jobs(repo, job_date=job_date or None)
    user_ids = sorted({u["user_id"] for j in jobs for u in j.get("assigned_users") or [] if u.get("user_id")})
    profiles = repo.list_profiles(ids=user_ids) if user_ids else []
    contacts = {p.get("id"): p.get("contact_number") for p in profiles}
    return calculate_employee_stats(jobs, contacts)
