"""Built-in authorization model for dashboards, folders and resources.

Action sets follow view ⊂ edit ⊂ admin. The fine-grained actions (read,
create, write, delete, permissions_read, permissions_write) are derived from
them, and folders pass every relation down to their children.
"""

from packages.rebac.conditions import ConditionEvaluator
from packages.rebac.schema import CompiledSchema, SchemaLoader

DEFAULT_SCHEMA = """
model
  schema 1.1

type user

type team
  relations
    define admin: [user]
    define member: [user] or admin

type role
  relations
    define assignee: [user, team#member, role#assignee]

type namespace
  relations
    define admin: [user, team#member, role#assignee]
    define edit: [user, team#member, role#assignee] or admin
    define view: [user, team#member, role#assignee] or edit
    define read: [user, team#member, role#assignee] or view
    define create: [user, team#member, role#assignee] or edit
    define write: [user, team#member, role#assignee] or edit
    define delete: [user, team#member, role#assignee] or edit
    define permissions_read: [user, team#member, role#assignee] or admin
    define permissions_write: [user, team#member, role#assignee] or admin

type folder2
  relations
    define parent: [folder2]
    define admin: [user, team#member, role#assignee] or admin from parent
    define edit: [user, team#member, role#assignee] or admin or edit from parent
    define view: [user, team#member, role#assignee] or edit or view from parent
    define read: [user, team#member, role#assignee] or view or read from parent
    define create: [user, team#member, role#assignee] or edit or create from parent
    define write: [user, team#member, role#assignee] or edit or write from parent
    define delete: [user, team#member, role#assignee] or edit or delete from parent
    define permissions_read: [user, team#member, role#assignee] or admin or permissions_read from parent
    define permissions_write: [user, team#member, role#assignee] or admin or permissions_write from parent

type dashboard
  relations
    define parent: [folder2]
    define admin: [user, team#member, role#assignee] or admin from parent
    define edit: [user, team#member, role#assignee] or admin or edit from parent
    define view: [user, team#member, role#assignee] or edit or view from parent
    define read: [user, team#member, role#assignee] or view or read from parent
    define write: [user, team#member, role#assignee] or edit
    define delete: [user, team#member, role#assignee] or edit
    define permissions_read: [user, team#member, role#assignee] or admin
    define permissions_write: [user, team#member, role#assignee] or admin

type resource
  relations
    define admin: [user, team#member, role#assignee, user with group_filter, team#member with group_filter, role#assignee with group_filter]
    define edit: [user, team#member, role#assignee, user with group_filter, team#member with group_filter, role#assignee with group_filter] or admin
    define view: [user, team#member, role#assignee, user with group_filter, team#member with group_filter, role#assignee with group_filter] or edit
    define read: [user, team#member, role#assignee, user with group_filter, team#member with group_filter, role#assignee with group_filter] or view
    define create: [user, team#member, role#assignee, user with group_filter, team#member with group_filter, role#assignee with group_filter] or edit
    define write: [user, team#member, role#assignee, user with group_filter, team#member with group_filter, role#assignee with group_filter] or edit
    define delete: [user, team#member, role#assignee, user with group_filter, team#member with group_filter, role#assignee with group_filter] or edit

condition group_filter(requested_group: string, resource_group: string) {
  requested_group == resource_group
}
"""

# ACL permission names as shown to API callers, mapped to relations
DASHBOARD_PERMISSIONS = {
    "View": "view",
    "Edit": "edit",
    "Admin": "admin",
}


def load_default_schema(evaluator: ConditionEvaluator | None = None) -> CompiledSchema:
    """Compile the built-in model."""
    return SchemaLoader(evaluator).load_from_text(DEFAULT_SCHEMA)
