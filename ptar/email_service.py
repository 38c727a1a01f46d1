"""SMTP notifications.

Every template renders to a subject, a plain text body and a small HTML body.
Sending never raises: failures are logged and reported as ``False`` so callers
can record whether a notification went out.
"""
import logging
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Any, Dict, Iterable, Tuple

from .config import settings

logger = logging.getLogger(__name__)

SEVERITY_LABELS = {"low": "Baja", "medium": "Media", "high": "Alta"}
PRIORITY_LABELS = {"low": "Baja", "medium": "Media", "high": "Alta", "urgent": "Urgente"}
PARAMETER_LABELS = {"DQO": "DQO (Demanda Química de Oxígeno)", "pH": "pH", "SS": "Sólidos Suspendidos"}


def is_configured() -> bool:
    return bool(settings.smtp_host and settings.smtp_user and settings.smtp_pass)


def _maintenance_reminder(d: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"Recordatorio: Mantenimiento programado en {d['days_remaining']} días - {d['plant_name']}"
    body = (
        f"Planta: {d['plant_name']}\n"
        f"Tarea: {d['task_description']}\n"
        f"Fecha programada: {d['scheduled_date']}\n"
        f"Días restantes: {d['days_remaining']}\n"
    )
    return subject, body


def _parameter_alert(d: Dict[str, Any]) -> Tuple[str, str]:
    level = "CRÍTICO" if d.get("alert_type") == "critical" else "ALERTA"
    label = PARAMETER_LABELS.get(d["parameter"], d["parameter"])
    subject = f"{level}: {d['parameter']} fuera de rango en {d['plant_name']}"
    limits = []
    if d.get("threshold_min") is not None:
        limits.append(f"mínimo {d['threshold_min']}")
    if d.get("threshold_max") is not None:
        limits.append(f"máximo {d['threshold_max']}")
    body = (
        f"Planta: {d['plant_name']}\n"
        f"Parámetro: {label}\n"
        f"Valor medido: {d['value']} {d.get('unit') or ''}\n"
        f"Límites: {', '.join(limits)}\n"
        f"Fecha de medición: {d['measurement_date']}\n"
    )
    return subject, body


def _emergency_alert(d: Dict[str, Any]) -> Tuple[str, str]:
    label = SEVERITY_LABELS.get(d.get("severity"), d.get("severity"))
    subject = f"EMERGENCIA [{label}]: {d['plant_name']}"
    body = (
        f"Planta: {d['plant_name']}\n"
        f"Motivo: {d['reason']}\n"
        f"Severidad: {label}\n"
        f"Reportado por: {d.get('operator_name') or '-'}\n"
        f"Ubicación: {d.get('location_description') or '-'}\n"
        f"Observaciones: {d.get('observations') or '-'}\n"
        f"Fecha: {d['reported_at']}\n"
    )
    return subject, body


def _task_assignment(d: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"Nueva tarea asignada: {d['title']} - {d['plant_name']}"
    body = (
        f"Hola {d.get('assigned_to_name') or ''},\n\n"
        f"Se le ha asignado la tarea \"{d['title']}\" de la emergencia \"{d['emergency_reason']}\".\n"
        f"Prioridad: {PRIORITY_LABELS.get(d.get('priority'), d.get('priority'))}\n"
        f"Fecha límite: {d.get('due_date') or 'sin fecha'}\n"
        f"Descripción: {d.get('description') or '-'}\n"
    )
    return subject, body


def _task_reminder(d: Dict[str, Any]) -> Tuple[str, str]:
    suffix = " (VENCIDA)" if d.get("is_overdue") else ""
    subject = f"Recordatorio: {d['title']}{suffix} - {d['plant_name']}"
    body = (
        f"La tarea \"{d['title']}\" sigue pendiente.\n"
        f"Emergencia: {d['emergency_reason']}\n"
        f"Estado: {d.get('status')}\n"
        f"Fecha límite: {d.get('due_date') or 'sin fecha'}\n"
    )
    return subject, body


def _ticket_new(d: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"Nuevo Ticket: {d['ticket_number']} - {d['subject']}"
    body = (
        f"Ticket: {d['ticket_number']}\n"
        f"Planta: {d.get('plant_name') or '-'}\n"
        f"Categoría: {d['category']}\n"
        f"Prioridad: {PRIORITY_LABELS.get(d.get('priority'), d.get('priority'))}\n"
        f"Solicitante: {d['requester_name']} {d.get('requester_email') or ''}\n\n"
        f"{d['description']}\n"
    )
    return subject, body


TEMPLATES = {
    "maintenance_reminder": _maintenance_reminder,
    "parameter_alert": _parameter_alert,
    "emergency_alert": _emergency_alert,
    "task_assignment": _task_assignment,
    "task_reminder": _task_reminder,
    "ticket_new": _ticket_new,
}


def render(template: str, data: Dict[str, Any]) -> Tuple[str, str]:
    try:
        builder = TEMPLATES[template]
    except KeyError:
        raise ValueError(f"Plantilla de email desconocida: {template}")
    return builder(data)


def _html(subject: str, body: str) -> str:
    lines = "<br>".join(escape(line) for line in body.splitlines())
    return (
        "<div style=\"font-family: Arial, sans-serif\">"
        f"<h2 style=\"color:#1e40af\">{escape(subject)}</h2><p>{lines}</p>"
        "<p style=\"color:#6b7280;font-size:12px\">Sistema de Gestión PTAR</p></div>"
    )


def send_raw(recipients: Iterable[str], subject: str, body: str) -> bool:
    to = [r for r in recipients if r]
    if not to:
        logger.warning("Email '%s' skipped: no recipients", subject)
        return False
    if not is_configured():
        logger.warning("SMTP not configured, email '%s' not sent", subject)
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.smtp_from
    msg["To"] = ", ".join(to)
    msg.set_content(body)
    msg.add_alternative(_html(subject, body), subtype="html")

    try:
        if settings.smtp_port == 465:
            with smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, timeout=15) as smtp:
                smtp.login(settings.smtp_user, settings.smtp_pass)
                smtp.send_message(msg)
        else:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as smtp:
                smtp.starttls()
                smtp.login(settings.smtp_user, settings.smtp_pass)
                smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Error sending email '%s' to %s: %s", subject, to, exc)
        return False
    logger.info("Email sent: '%s' to %s", subject, to)
    return True


def send_email(recipients: Iterable[str], template: str, data: Dict[str, Any]) -> bool:
    subject, body = render(template, data)
    return send_raw(recipients, subject, body)
