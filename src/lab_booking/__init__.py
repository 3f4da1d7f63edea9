"""
Модуль контекста бронирования лабораторий (Lab Booking Context).

Отвечает за бронирование лабораторий с ограниченной вместимостью, включая:
- Проверку конфликтов расписания и периодов обслуживания
- Жизненный цикл бронирования: создание, изменение, одобрение, отклонение, отмену
- Неизменяемый журнал аудита и уведомления участников
"""

from . import application, config, domain, exceptions, infrastructure, interfaces

__all__ = [
    'application',
    'config',
    'domain',
    'exceptions',
    'infrastructure',
    'interfaces',
]
