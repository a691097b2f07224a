from .hubspot_tools import (
    hubspot_get_contacts_page, hubspot_get_all_contacts, hubspot_get_contacts_since,
    hubspot_get_lists, hubspot_get_list_contacts, hubspot_test_connection,
)
from .sheets_tools import (
    extract_spreadsheet_id, sheets_get_metadata, sheets_get_values,
    sheets_get_all_data, sheets_test_connection,
)

__all__ = [
    "hubspot_get_contacts_page", "hubspot_get_all_contacts", "hubspot_get_contacts_since",
    "hubspot_get_lists", "hubspot_get_list_contacts", "hubspot_test_connection",
    "extract_spreadsheet_id", "sheets_get_metadata", "sheets_get_values",
    "sheets_get_all_data", "sheets_test_connection",
]
