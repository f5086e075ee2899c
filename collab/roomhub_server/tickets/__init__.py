"""
Support ticket workflow for RoomHub.
"""

from .workflow import INVALID_ASSIGNEE, NO_ADMIN, AssignmentResult, OpenedTicket, TicketWorkflow

__all__ = ["INVALID_ASSIGNEE", "NO_ADMIN", "AssignmentResult", "OpenedTicket", "TicketWorkflow"]
