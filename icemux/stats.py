"""Statistics records for candidates and candidate pairs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class CandidatePairStats:
    """Statistics of one ICE candidate pair."""

    timestamp: Optional[datetime] = None
    local_candidate_id: str = ""
    remote_candidate_id: str = ""
    # State of the checklist for the pair.
    state: str = ""
    nominated: bool = False
    packets_sent: int = 0
    packets_received: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    last_packet_sent_timestamp: Optional[datetime] = None
    last_packet_received_timestamp: Optional[datetime] = None
    first_request_timestamp: Optional[datetime] = None
    last_request_timestamp: Optional[datetime] = None
    first_response_timestamp: Optional[datetime] = None
    last_response_timestamp: Optional[datetime] = None
    first_request_received_timestamp: Optional[datetime] = None
    last_request_received_timestamp: Optional[datetime] = None
    # Round trip times are in seconds.
    total_round_trip_time: float = 0.0
    current_round_trip_time: float = 0.0
    # Bitrates are in bits per second over a one second window.
    available_outgoing_bitrate: float = 0.0
    available_incoming_bitrate: float = 0.0
    circuit_breaker_trigger_count: int = 0
    requests_received: int = 0
    requests_sent: int = 0
    responses_received: int = 0
    responses_sent: int = 0
    retransmissions_received: int = 0
    retransmissions_sent: int = 0
    consent_requests_sent: int = 0
    consent_expired_timestamp: Optional[datetime] = None


@dataclass
class CandidateStats:
    """Statistics of one ICE candidate."""

    timestamp: Optional[datetime] = None
    id: str = ""
    # Network interface type of the base of a local candidate.
    network_type: str = ""
    ip: str = ""
    port: int = 0
    candidate_type: str = ""
    priority: int = 0
    # URL of the STUN or TURN server that produced this address.
    url: str = ""
    # Protocol used to reach the TURN server: UDP, TCP or TLS.
    relay_protocol: str = ""
    deleted: bool = False