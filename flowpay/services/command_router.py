"""Routes one inbound turn (text command or button token) to a rendered reply.

Stateless: conversation position lives entirely in the action tokens carried by
buttons, so any transport that can echo a token back drives the same graph.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from flowpay.logging_config import get_logger
from flowpay.models import Tenant
from flowpay.schemas.flow import FlowModel
from flowpay.services import checkout_service, user_service
from flowpay.services.flow_service import find_flow_by_trigger, find_step, get_main_step
from flowpay.services.payment_service import approve_and_fulfill
from flowpay.services.sale_state import SaleStatus
from flowpay.services.step_executor import RenderContext, deliver, execute_step, plain_message
from flowpay.transports.base import OutgoingButton, OutgoingMessage, Transport

logger = get_logger("command_router")

PROFILE_COMMAND = "/perfil"

NOT_CONFIGURED_MESSAGE = "Olá! Este bot ainda não foi configurado."
UNKNOWN_COMMAND_MESSAGE = "Comando não reconhecido."
BROKEN_FLOW_MESSAGE = "Este fluxo está configurado incorretamente (passo inicial não encontrado)."
STALE_BUTTON_MESSAGE = "Este botão parece estar desatualizado."
INVALID_ACTION_MESSAGE = "Ação inválida."
MAIN_MENU_MISSING_MESSAGE = "O fluxo principal não foi encontrado."
ALREADY_ACQUIRED_MESSAGE = "Você já resgatou este produto. Veja em /perfil."


@dataclass
class TurnContext:
    db: Session
    tenant: Tenant
    flow_model: Optional[FlowModel]
    transport: Transport
    channel: str
    chat_id: str
    user_id: str
    user_name: Optional[str] = None
    username: Optional[str] = None
    message_id: Optional[int] = None  # message whose button was pressed
    callback_id: Optional[str] = None
    is_callback: bool = False
    gateway_factory: Optional[Callable] = None

    @property
    def render_context(self) -> RenderContext:
        return RenderContext(user_name=self.user_name, tenant_name=self.tenant.subdomain)


def parse_action_token(token: str) -> tuple[str, Optional[str]]:
    """Split `TYPE:payload` on the first colon; payloads may contain colons."""
    action_type, sep, payload = (token or "").partition(":")
    return action_type.strip(), (payload if sep and payload else None)


# --- Helpers ---


def _reply(ctx: TurnContext, text: str, buttons: Optional[list[list[OutgoingButton]]] = None) -> None:
    deliver(ctx.transport, ctx.chat_id, plain_message(ctx.transport, text, buttons), ctx.message_id)


def _show(ctx: TurnContext, message: OutgoingMessage) -> Optional[int]:
    return deliver(ctx.transport, ctx.chat_id, message, ctx.message_id).unwrap_or(None)


def _notify(ctx: TurnContext, text: str) -> Optional[str]:
    """Short notice: a callback toast when the transport has one, otherwise a message."""
    if ctx.callback_id:
        ctx.transport.answer_callback(ctx.callback_id, text, show_alert=True)
        ctx.callback_id = None
        return None
    deliver(ctx.transport, ctx.chat_id, plain_message(ctx.transport, text))
    return None


def _show_main_menu(ctx: TurnContext, message_id: Optional[int]) -> None:
    step = get_main_step(ctx.flow_model) if ctx.flow_model else None
    if not step:
        deliver(ctx.transport, ctx.chat_id, plain_message(ctx.transport, MAIN_MENU_MISSING_MESSAGE), message_id)
        return
    execute_step(ctx.transport, ctx.chat_id, step, ctx.render_context, message_id)


def _remove_current_message(ctx: TurnContext) -> None:
    if ctx.message_id is not None and ctx.transport.supports_edit:
        ctx.transport.delete_message(ctx.chat_id, ctx.message_id)


# --- Commands ---


def _touch_user(ctx: TurnContext) -> None:
    try:
        user_service.get_or_create_user(
            ctx.db, ctx.tenant.id, ctx.channel, ctx.user_id, name=ctx.user_name, username=ctx.username
        )
        ctx.db.commit()
    except Exception as e:
        ctx.db.rollback()
        logger.error(f"Error upserting user: {e}", extra={"context": {"tenant": ctx.tenant.subdomain}}, exc_info=True)


def handle_command(ctx: TurnContext, command: str) -> None:
    command = (command or "").strip()
    logger.info(
        "Command received",
        extra={"context": {"tenant": ctx.tenant.subdomain, "channel": ctx.channel, "command": command[:64]}},
    )
    _touch_user(ctx)

    if not ctx.flow_model or not ctx.flow_model.flows:
        _reply(ctx, NOT_CONFIGURED_MESSAGE)
        return

    flow = find_flow_by_trigger(ctx.flow_model, command)
    if flow:
        step = flow.start_step
        if not step:
            logger.error("Start step not found", extra={"context": {"flow": flow.name}})
            _reply(ctx, BROKEN_FLOW_MESSAGE)
            return
        execute_step(ctx.transport, ctx.chat_id, step, ctx.render_context)
        return

    if command == PROFILE_COMMAND:
        show_profile(ctx, None)
        return

    logger.info("No flow for command", extra={"context": {"command": command[:64]}})
    _reply(ctx, UNKNOWN_COMMAND_MESSAGE)


# --- Actions ---


def go_to_step(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    if not payload:
        return INVALID_ACTION_MESSAGE
    step = find_step(ctx.flow_model, payload)
    if not step:
        logger.warning("Step not found in any flow", extra={"context": {"step_id": payload}})
        return _notify(ctx, STALE_BUTTON_MESSAGE)
    execute_step(ctx.transport, ctx.chat_id, step, ctx.render_context, ctx.message_id)
    return None


def main_menu(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    _show_main_menu(ctx, ctx.message_id)
    return None


def start_over(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    _remove_current_message(ctx)
    _show_main_menu(ctx, None)
    return None


def show_profile(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    user = user_service.find_user(ctx.db, ctx.tenant.id, ctx.channel, ctx.user_id)
    if not user:
        if ctx.is_callback:
            return _notify(ctx, "Usuário não encontrado.")
        _reply(ctx, "Não encontrei seu perfil. Interaja com o bot primeiro para se registrar.")
        return None
    has_main = bool(ctx.flow_model and get_main_step(ctx.flow_model))
    _show(ctx, user_service.render_profile(user, ctx.transport.formatter, show_back_button=has_main))
    return None


def link_to_product(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    product = checkout_service.find_product(ctx.db, ctx.tenant.id, payload) if payload else None
    if not product:
        logger.warning("Linked product not found", extra={"context": {"product_id": payload}})
        _reply(ctx, "Produto não encontrado.", [[checkout_service.BACK_BUTTON]])
        return None
    _show(ctx, checkout_service.render_product_card(product, ctx.transport.formatter))
    return None


def acquire_product(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    product = checkout_service.find_product(ctx.db, ctx.tenant.id, payload) if payload else None
    if not product:
        _reply(ctx, "❌ Produto não encontrado.")
        return None
    if not checkout_service.is_free(product):
        return _notify(ctx, "Este produto não é gratuito.")

    sale = checkout_service.find_free_sale(ctx.db, ctx.tenant.id, product.id, ctx.user_id)
    if sale and sale.status == SaleStatus.APPROVED.value:
        logger.info("Free product already acquired", extra={"context": {"sale_id": sale.id}})
        return _notify(ctx, ALREADY_ACQUIRED_MESSAGE)
    if sale:
        sale.chat_id = str(ctx.chat_id)
        sale.message_id = ctx.message_id
    else:
        sale = checkout_service.create_free_sale(
            ctx.db, ctx.tenant, product, ctx.user_id, ctx.channel, ctx.chat_id, ctx.message_id
        )
    ctx.db.commit()
    approve_and_fulfill(
        ctx.db,
        ctx.tenant,
        sale,
        total_value=0,
        gateway_status=checkout_service.FREE_GATEWAY,
        transport=ctx.transport,
        flow_model=ctx.flow_model,
    )
    return None


def buy_with_method(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    parts = (payload or "").split(":", 2)
    if len(parts) != 3 or not all(parts):
        return _notify(ctx, INVALID_ACTION_MESSAGE)
    method, gateway, product_id = parts

    on_screen = _show(ctx, plain_message(ctx.transport, "⏳ Um momento, estamos preparando seu pagamento..."))
    if on_screen is None:
        on_screen = ctx.message_id

    product = checkout_service.find_product(ctx.db, ctx.tenant.id, product_id)
    if not product:
        deliver(ctx.transport, ctx.chat_id, plain_message(ctx.transport, "❌ Produto não encontrado."), on_screen)
        return None
    if (method, gateway) not in checkout_service.available_payment_methods(product):
        logger.warning(
            "Payment method not offered for product",
            extra={"context": {"product_id": product.id, "method": method, "gateway": gateway}},
        )
        deliver(ctx.transport, ctx.chat_id, plain_message(ctx.transport, "❌ Forma de pagamento indisponível."), on_screen)
        return None

    sale = checkout_service.get_or_create_pending_sale(
        ctx.db, ctx.tenant, product, ctx.user_id, ctx.channel, ctx.chat_id, on_screen, method, gateway
    )
    ctx.db.commit()

    result = checkout_service.start_payment(
        ctx.db, ctx.tenant, product, sale, method, ctx.transport.formatter, ctx.gateway_factory
    )
    if not result.ok:
        ctx.db.commit()
        deliver(ctx.transport, ctx.chat_id, plain_message(ctx.transport, f"❌ {result.error}"), on_screen)
        return None

    shown = deliver(ctx.transport, ctx.chat_id, result.value, on_screen)
    if shown.ok and shown.value is not None:
        sale.message_id = shown.value
    ctx.db.commit()
    return None


def cancel_sale(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    if not payload:
        return INVALID_ACTION_MESSAGE
    cancelled = checkout_service.cancel_sale(ctx.db, ctx.tenant.id, payload)
    ctx.db.commit()
    logger.info("Buyer cancel", extra={"context": {"sale_id": payload, "cancelled": cancelled}})

    _remove_current_message(ctx)
    _show_main_menu(ctx, None)
    return "Compra cancelada!" if cancelled else "Esta compra não pode mais ser cancelada."


def delete_data_confirm(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    formatter = ctx.transport.formatter
    text = "\n\n".join(
        [
            f"⚠️ {formatter.bold(formatter.escape('Atenção!'))}",
            formatter.escape("Você tem certeza que deseja deletar todos os seus dados associados a este bot?"),
            formatter.bold(formatter.escape("Esta ação é irreversível.")),
        ]
    )
    buttons = [
        [
            OutgoingButton(text="Sim, deletar agora", token="DELETE_DATA_EXECUTE"),
            OutgoingButton(text="Não, voltar", token="SHOW_PROFILE"),
        ]
    ]
    _show(ctx, OutgoingMessage(text=text, buttons=buttons, title="Deletar dados"))
    return None


def delete_data_execute(ctx: TurnContext, payload: Optional[str]) -> Optional[str]:
    deleted = user_service.delete_user(ctx.db, ctx.tenant.id, ctx.channel, ctx.user_id)
    ctx.db.commit()
    logger.info("User data deletion", extra={"context": {"tenant": ctx.tenant.subdomain, "deleted": deleted}})
    if deleted:
        _reply(ctx, "✅ Seus dados foram removidos com sucesso. Use /start para começar de novo.")
    else:
        _reply(ctx, "❌ Não foi possível remover seus dados. Pode ser que eles já tenham sido removidos.")
    return None


ACTION_HANDLERS = {
    "GO_TO_STEP": go_to_step,
    "MAIN_MENU": main_menu,
    "START_OVER": start_over,
    "SHOW_PROFILE": show_profile,
    "LINK_TO_PRODUCT": link_to_product,
    "ACQUIRE_PRODUCT": acquire_product,
    "BUY_WITH_METHOD": buy_with_method,
    "CANCEL_SALE": cancel_sale,
    "DELETE_DATA_CONFIRM": delete_data_confirm,
    "DELETE_DATA_EXECUTE": delete_data_execute,
}


def is_action_token(text: str) -> bool:
    action_type, _ = parse_action_token(text)
    return action_type in ACTION_HANDLERS


def handle_action(ctx: TurnContext, token: str) -> None:
    action_type, payload = parse_action_token(token)
    logger.info(
        "Action received",
        extra={"context": {"tenant": ctx.tenant.subdomain, "channel": ctx.channel, "action": action_type}},
    )

    toast = None
    handler = ACTION_HANDLERS.get(action_type)
    if handler is None:
        logger.warning("Unknown action", extra={"context": {"token": (token or "")[:64]}})
    elif not ctx.flow_model:
        toast = "Este bot não está configurado corretamente (Configuração inválida)."
    else:
        toast = handler(ctx, payload)

    if ctx.callback_id:
        ctx.transport.answer_callback(ctx.callback_id, toast)
    elif toast and not ctx.is_callback:
        _reply(ctx, toast)
