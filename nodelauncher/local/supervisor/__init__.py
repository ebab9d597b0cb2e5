"""
The Supervisor package.
Manages the lifecycle of the chain processes.

This package contains the ProcessSupervisor, which owns every running chain,
and the Sequencer, which starts and stops groups of chains in dependency order
and performs the application-wide shutdown.
"""
from .supervisor import ProcessSupervisor, ProcessRecord
from .sequencer import Sequencer
from .sync_monitor import SyncMonitor

__all__ = ['ProcessSupervisor', 'ProcessRecord', 'Sequencer', 'SyncMonitor']
