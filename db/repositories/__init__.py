"""Repository layer for audience-sync.

Provides persistence and query methods for the three core entities:
- contacts: find_match, upsert, merge, soft_delete, soft_delete_missing,
            count_where, page_where, keyset_page, get_many
- segments: get, get_by_name, list_all, insert, save, delete
- sync_jobs: create_if_absent, get, list_jobs, last_completed,
             mark_running, save_progress, finish
"""
