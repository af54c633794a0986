from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from flowpay.models import Purchase, User
from flowpay.services.clock import ensure_timezone, utcnow
from flowpay.transports.base import MessageFormatter, OutgoingButton, OutgoingMessage

NO_PLAN = "Nenhum"


def _user_query(db: Session, tenant_id, channel: str, platform_id: str):
    query = db.query(User).filter(User.tenant_id == tenant_id)
    if channel == "whatsapp":
        return query.filter(User.whatsapp_id == str(platform_id))
    return query.filter(User.telegram_id == int(platform_id))


def find_user(db: Session, tenant_id, channel: str, platform_id: str) -> Optional[User]:
    return _user_query(db, tenant_id, channel, platform_id).first()


def get_or_create_user(
    db: Session,
    tenant_id,
    channel: str,
    platform_id: str,
    name: Optional[str] = None,
    username: Optional[str] = None,
) -> User:
    """Find user by transport id or create new one. Name and username are refreshed."""
    user = find_user(db, tenant_id, channel, platform_id)
    now = utcnow()

    if not user:
        user = User(
            tenant_id=tenant_id,
            state="active",
            plan=NO_PLAN,
            created_at=now,
        )
        if channel == "whatsapp":
            user.whatsapp_id = str(platform_id)
        else:
            user.telegram_id = int(platform_id)
        db.add(user)

    if name:
        user.name = name
    if username:
        user.username = username
    user.updated_at = now
    db.flush()
    return user


def delete_user(db: Session, tenant_id, channel: str, platform_id: str) -> bool:
    """Remove the user and their purchase history. Returns False when nothing was stored."""
    user = find_user(db, tenant_id, channel, platform_id)
    if not user:
        return False
    db.delete(user)
    db.flush()
    return True


def has_active_subscription(db: Session, user_id) -> bool:
    return (
        db.query(Purchase)
        .filter(
            Purchase.user_id == user_id,
            Purchase.type == "subscription",
            Purchase.status == "approved",
        )
        .first()
        is not None
    )


def _format_date(value: Optional[datetime]) -> str:
    value = ensure_timezone(value)
    return value.strftime("%d/%m/%Y") if value else "-"


def _purchase_status_line(purchase: Purchase, now: datetime) -> Optional[str]:
    if purchase.type != "subscription":
        return None
    expires_at = ensure_timezone(purchase.expires_at)
    if expires_at is None:
        return "  - Status: 🟢 Vitalícia"
    if purchase.status == "expired" or expires_at <= now:
        return f"  - Status: 🔴 Expirada em {_format_date(expires_at)}"
    return f"  - Status: 🟢 Ativa até {_format_date(expires_at)}"


def render_profile(user: User, formatter: MessageFormatter, show_back_button: bool = False) -> OutgoingMessage:
    """Profile view listing the user's purchases with a data deletion button."""
    now = utcnow()
    header = formatter.bold(formatter.escape(f"Perfil de {user.name or 'Usuário'}"))
    lines = [header, ""]

    purchases = list(user.purchases or [])
    if not purchases:
        lines.append(formatter.escape("Você ainda não fez nenhuma compra."))
    else:
        lines.append(formatter.bold(formatter.escape("Suas Compras e Assinaturas:")))
        lines.append("")
        for purchase in purchases:
            lines.append(f"🛍️ {formatter.bold(formatter.escape(purchase.product_name))}")
            lines.append(formatter.escape(f"  - Data: {_format_date(purchase.purchased_at)}"))
            status_line = _purchase_status_line(purchase, now)
            if status_line:
                lines.append(formatter.escape(status_line))
            lines.append("")

    buttons = [[OutgoingButton(text="🗑️ Deletar Meus Dados", token="DELETE_DATA_CONFIRM")]]
    if show_back_button:
        buttons.append([OutgoingButton(text="⬅️ Voltar ao Início", token="MAIN_MENU")])

    return OutgoingMessage(text="\n".join(lines).rstrip(), buttons=buttons, title="Perfil")
