from portivo.models.user import User  # noqa: F401
from portivo.models.workspace import Workspace, WorkspaceMember  # noqa: F401
from portivo.models.client import Client, ClientContact  # noqa: F401
from portivo.models.project import Project, ProjectUpdate, Message, File  # noqa: F401
from portivo.models.approval import ApprovalRequest  # noqa: F401
from portivo.models.invoice import Invoice, InvoiceItem  # noqa: F401
from portivo.models.activity import ActivityLog  # noqa: F401
