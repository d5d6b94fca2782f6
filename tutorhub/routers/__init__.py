from tutorhub.routers import class_sessions, credits, cron, schedule_slots, timeslots, waitlist

__all__ = [
    'class_sessions',
    'credits',
    'cron',
    'schedule_slots',
    'timeslots',
    'waitlist',
]
