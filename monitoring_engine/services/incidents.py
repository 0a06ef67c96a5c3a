"""自动事件单

目标转为不可达时自动创建事件单，恢复后自动关闭。事件单以
(source='monitoring', source_id=目标ID) 为键，同一目标最多只有一张打开的事件单。
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional, List

from ..models.monitoring import (
    Target, Incident, INCIDENT_SOURCE_MONITORING, DEFAULT_INCIDENT_SEVERITY,
    ensure_utc, utcnow
)
from ..utils.exceptions import IncidentError
from ..utils.log_manager import get_logger

DOWN_TITLE = "🚨 监控目标不可达"


def format_reg_no(reg_format: str, seq: int, created_at: datetime) -> str:
    """
    按模板生成事件单登记号

    Args:
        reg_format: 模板，支持 {seq} 和 {year}，例如 'INC-{seq}' 或 'INC-{year}-{seq:04d}'
        seq: 序号
        created_at: 创建时间

    Raises:
        IncidentError: 模板无效
    """
    try:
        return reg_format.format(seq=seq, year=created_at.year)
    except (KeyError, IndexError, ValueError) as e:
        raise IncidentError(f"事件单登记号模板无效: {reg_format} ({e})", recoverable=False)


class BaseIncidentsStore(ABC):
    """事件单存储接口，由外部事件单模块实现"""

    @abstractmethod
    async def find_open_incident_by_source(self, source: str,
                                           source_id: str) -> Optional[Incident]:
        """查找来源对应的打开状态事件单"""
        pass

    @abstractmethod
    async def create_incident(self, incident: Incident, reg_format: str) -> Incident:
        """创建事件单并分配登记号"""
        pass

    @abstractmethod
    async def close_incident(self, incident_id: int) -> Optional[Incident]:
        """关闭事件单，返回关闭后的事件单"""
        pass


class MemoryIncidentsStore(BaseIncidentsStore):
    """内存事件单存储"""

    def __init__(self):
        self._incidents: Dict[int, Incident] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def find_open_incident_by_source(self, source: str,
                                           source_id: str) -> Optional[Incident]:
        for incident in self._incidents.values():
            if (incident.status == 'open' and incident.source == source
                    and incident.source_id == source_id):
                return incident
        return None

    async def create_incident(self, incident: Incident, reg_format: str) -> Incident:
        async with self._lock:
            seq = self._next_id
            incident = replace(
                incident,
                id=seq,
                reg_no=format_reg_no(reg_format, seq, incident.created_at),
                status='open'
            )
            self._next_id += 1
            self._incidents[incident.id] = incident
            return incident

    async def close_incident(self, incident_id: int) -> Optional[Incident]:
        async with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None or incident.status == 'closed':
                return None
            incident = replace(incident, status='closed', closed_at=utcnow())
            self._incidents[incident_id] = incident
            return incident

    def list_incidents(self, status: Optional[str] = None) -> List[Incident]:
        incidents = sorted(self._incidents.values(), key=lambda i: i.id)
        if status:
            incidents = [i for i in incidents if i.status == status]
        return incidents


class AutoIncidentManager:
    """根据目标可用性自动开关事件单"""

    def __init__(self, incidents_store: BaseIncidentsStore, reg_format: str = 'INC-{seq}'):
        """
        Args:
            incidents_store: 事件单存储
            reg_format: 登记号模板
        """
        self.incidents_store = incidents_store
        self.reg_format = reg_format
        self.logger = get_logger('incidents')

    def build_incident(self, target: Target, now: datetime) -> Incident:
        """生成目标不可达时的事件单内容"""
        name = (target.name or '').strip() or f"目标 #{target.id}"
        detected_at = ensure_utc(now)
        return Incident(
            title=f"{DOWN_TITLE}: {name}",
            description=f"监控目标 {name} ({target.address}) 不可达",
            severity=(target.incident_severity or '').strip().lower() or DEFAULT_INCIDENT_SEVERITY,
            source=INCIDENT_SOURCE_MONITORING,
            source_id=target.id,
            owner=target.owner,
            created_at=detected_at,
            meta={
                'incident_type': '服务故障',
                'detection_source': '监控',
                'detected_at': detected_at.isoformat(),
                'affected_systems': name,
                'what_happened': f"监控目标 {name} 不可达",
                'actions_taken': '已通知负责人并自动创建事件单',
            }
        )

    async def on_down(self, target: Target, now: datetime) -> Optional[Incident]:
        """
        目标不可达：不存在打开的事件单时创建一张

        Returns:
            Optional[Incident]: 新建的事件单；已存在时返回None
        """
        existing = await self.incidents_store.find_open_incident_by_source(
            INCIDENT_SOURCE_MONITORING, target.id)
        if existing is not None:
            self.logger.debug(f"目标 {target.name} 已有打开的事件单 {existing.reg_no}")
            return None

        incident = await self.incidents_store.create_incident(
            self.build_incident(target, now), self.reg_format)
        self.logger.warning(f"目标 {target.name} 不可达，已创建事件单 {incident.reg_no}")
        return incident

    async def on_up(self, target: Target, now: datetime) -> Optional[Incident]:
        """
        目标恢复：关闭打开的事件单，不存在时什么也不做

        Returns:
            Optional[Incident]: 被关闭的事件单
        """
        existing = await self.incidents_store.find_open_incident_by_source(
            INCIDENT_SOURCE_MONITORING, target.id)
        if existing is None:
            return None

        closed = await self.incidents_store.close_incident(existing.id)
        if closed is not None:
            self.logger.info(f"目标 {target.name} 已恢复，已关闭事件单 {closed.reg_no}")
        return closed
