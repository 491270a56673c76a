"""Row -> response dict helpers shared by the routers."""

from portivo.models import (
    ApprovalRequest,
    Client,
    ClientContact,
    File,
    Invoice,
    InvoiceItem,
    Message,
    Project,
    ProjectUpdate,
    User,
    WorkspaceMember,
)
from portivo.services.invoice_service import effective_status
from portivo.services.money import format_money
from portivo.services.search_service import format_file_size


def user_to_dict(user: User) -> dict:
    return {"id": user.id, "email": user.email, "name": user.name, "avatar": user.avatar}


def member_to_dict(member: WorkspaceMember, user: User) -> dict:
    return {"id": member.id, "role": member.role, "created_at": member.created_at, "user": user_to_dict(user)}


def contact_to_dict(contact: ClientContact, user: User) -> dict:
    return {
        "id": contact.id,
        "is_primary": contact.is_primary,
        "created_at": contact.created_at,
        "user": user_to_dict(user),
    }


def client_to_dict(client: Client) -> dict:
    return {
        "id": client.id,
        "workspace_id": client.workspace_id,
        "name": client.name,
        "notes": client.notes,
        "created_at": client.created_at,
        "updated_at": client.updated_at,
    }


def project_to_dict(project: Project, client: Client | None = None) -> dict:
    return {
        "id": project.id,
        "client_id": project.client_id,
        "name": project.name,
        "description": project.description,
        "status": project.status,
        "start_date": project.start_date,
        "due_date": project.due_date,
        "created_at": project.created_at,
        "updated_at": project.updated_at,
        "client_name": client.name if client else None,
    }


def update_to_dict(update: ProjectUpdate, author: User) -> dict:
    return {
        "id": update.id,
        "project_id": update.project_id,
        "content": update.content,
        "created_at": update.created_at,
        "author": user_to_dict(author),
    }


def message_to_dict(message: Message, author: User) -> dict:
    return {
        "id": message.id,
        "project_id": message.project_id,
        "content": message.content,
        "created_at": message.created_at,
        "author": user_to_dict(author),
    }


def file_to_dict(file: File, uploader: User) -> dict:
    return {
        "id": file.id,
        "project_id": file.project_id,
        "name": file.name,
        "url": file.url,
        "size": file.size,
        "size_label": format_file_size(file.size),
        "content_type": file.content_type,
        "created_at": file.created_at,
        "uploaded_by": user_to_dict(uploader),
    }


def approval_to_dict(approval: ApprovalRequest) -> dict:
    return {
        "id": approval.id,
        "project_id": approval.project_id,
        "requested_by_id": approval.requested_by_id,
        "title": approval.title,
        "description": approval.description,
        "status": approval.status,
        "response_note": approval.response_note,
        "responded_by_id": approval.responded_by_id,
        "responded_at": approval.responded_at,
        "created_at": approval.created_at,
        "updated_at": approval.updated_at,
    }


def invoice_to_dict(
    invoice: Invoice,
    client: Client | None = None,
    items: list[InvoiceItem] | None = None,
) -> dict:
    return {
        "id": invoice.id,
        "client_id": invoice.client_id,
        "client_name": client.name if client else None,
        "number": invoice.number,
        "status": invoice.status,
        "effective_status": effective_status(invoice),
        "currency": invoice.currency,
        "subtotal": invoice.subtotal,
        "tax": invoice.tax,
        "total": invoice.total,
        "formatted_total": format_money(invoice.total, invoice.currency),
        "notes": invoice.notes,
        "due_date": invoice.due_date,
        "sent_at": invoice.sent_at,
        "paid_at": invoice.paid_at,
        "cancelled_at": invoice.cancelled_at,
        "created_at": invoice.created_at,
        "updated_at": invoice.updated_at,
        "items": [
            {
                "id": item.id,
                "position": item.position,
                "description": item.description,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total": item.total,
            }
            for item in items
        ] if items is not None else None,
    }
