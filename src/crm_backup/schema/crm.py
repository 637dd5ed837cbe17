"""Table graph of the recruitment CRM datastore.

``schools`` is the root; every other business table hangs off it through
``school_id``.  Interactions may also name a contact (``contact_id``,
nullable), so contacts come before interactions.
"""

from crm_backup.schema.models import ForeignKey, TableDef, TableGraph

_SCHOOL_FK = ForeignKey(table="schools", field="school_id")

CRM_TABLE_GRAPH = TableGraph(
    tables=[
        TableDef(name="schools"),
        TableDef(name="contacts", parents=[_SCHOOL_FK]),
        TableDef(
            name="interactions",
            parents=[_SCHOOL_FK, ForeignKey(table="contacts", field="contact_id")],
        ),
        TableDef(name="partnerships", parents=[_SCHOOL_FK]),
        TableDef(name="preferences", parents=[_SCHOOL_FK]),
    ]
)
