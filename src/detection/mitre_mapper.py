import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

# Enterprise ATT&CK tactics, keyed by the name Sigma uses in `attack.<tactic>` tags.
MITRE_TACTICS: Dict[str, Tuple[str, str]] = {
    "reconnaissance": ("TA0043", "Gather information for planning future operations"),
    "resource-development": ("TA0042", "Establish resources to support operations"),
    "initial-access": ("TA0001", "Gain initial foothold within a network"),
    "execution": ("TA0002", "Run malicious code"),
    "persistence": ("TA0003", "Maintain access across restarts"),
    "privilege-escalation": ("TA0004", "Gain higher-level permissions"),
    "defense-evasion": ("TA0005", "Avoid detection"),
    "credential-access": ("TA0006", "Steal credentials"),
    "discovery": ("TA0007", "Explore the environment"),
    "lateral-movement": ("TA0008", "Move through the environment"),
    "collection": ("TA0009", "Gather data of interest"),
    "command-and-control": ("TA0011", "Communicate with compromised systems"),
    "exfiltration": ("TA0010", "Steal data from the network"),
    "impact": ("TA0040", "Manipulate, interrupt, or destroy systems/data"),
}

# Techniques commonly referenced by Sigma rules; a subset of the full matrix.
MITRE_TECHNIQUES: Dict[str, Tuple[str, str]] = {
    # Execution
    "T1059": ("Command and Scripting Interpreter", "execution"),
    "T1059.001": ("PowerShell", "execution"),
    "T1059.003": ("Windows Command Shell", "execution"),
    "T1059.005": ("Visual Basic", "execution"),
    "T1059.006": ("Python", "execution"),
    "T1059.007": ("JavaScript", "execution"),
    "T1047": ("Windows Management Instrumentation", "execution"),
    "T1053": ("Scheduled Task/Job", "execution"),
    "T1053.005": ("Scheduled Task", "execution"),
    "T1204": ("User Execution", "execution"),
    "T1204.002": ("Malicious File", "execution"),
    # Persistence
    "T1547": ("Boot or Logon Autostart Execution", "persistence"),
    "T1547.001": ("Registry Run Keys / Startup Folder", "persistence"),
    "T1543": ("Create or Modify System Process", "persistence"),
    "T1543.003": ("Windows Service", "persistence"),
    "T1574": ("Hijack Execution Flow", "persistence"),
    "T1574.001": ("DLL Search Order Hijacking", "persistence"),
    # Privilege escalation
    "T1134": ("Access Token Manipulation", "privilege-escalation"),
    "T1134.001": ("Token Impersonation/Theft", "privilege-escalation"),
    "T1068": ("Exploitation for Privilege Escalation", "privilege-escalation"),
    "T1548": ("Abuse Elevation Control Mechanism", "privilege-escalation"),
    "T1548.002": ("Bypass User Account Control", "privilege-escalation"),
    # Defense evasion
    "T1027": ("Obfuscated Files or Information", "defense-evasion"),
    "T1027.010": ("Command Obfuscation", "defense-evasion"),
    "T1070": ("Indicator Removal", "defense-evasion"),
    "T1070.001": ("Clear Windows Event Logs", "defense-evasion"),
    "T1112": ("Modify Registry", "defense-evasion"),
    "T1218": ("System Binary Proxy Execution", "defense-evasion"),
    "T1218.011": ("Rundll32", "defense-evasion"),
    "T1055": ("Process Injection", "defense-evasion"),
    "T1562": ("Impair Defenses", "defense-evasion"),
    "T1562.001": ("Disable or Modify Tools", "defense-evasion"),
    # Credential access
    "T1003": ("OS Credential Dumping", "credential-access"),
    "T1003.001": ("LSASS Memory", "credential-access"),
    "T1003.002": ("Security Account Manager", "credential-access"),
    "T1003.003": ("NTDS", "credential-access"),
    "T1110": ("Brute Force", "credential-access"),
    "T1552": ("Unsecured Credentials", "credential-access"),
    "T1555": ("Credentials from Password Stores", "credential-access"),
    # Discovery
    "T1007": ("System Service Discovery", "discovery"),
    "T1018": ("Remote System Discovery", "discovery"),
    "T1033": ("System Owner/User Discovery", "discovery"),
    "T1049": ("System Network Connections Discovery", "discovery"),
    "T1069": ("Permission Groups Discovery", "discovery"),
    "T1069.001": ("Local Groups", "discovery"),
    "T1069.002": ("Domain Groups", "discovery"),
    "T1082": ("System Information Discovery", "discovery"),
    "T1083": ("File and Directory Discovery", "discovery"),
    # Lateral movement
    "T1021": ("Remote Services", "lateral-movement"),
    "T1021.001": ("Remote Desktop Protocol", "lateral-movement"),
    "T1021.002": ("SMB/Windows Admin Shares", "lateral-movement"),
    "T1021.006": ("Windows Remote Management", "lateral-movement"),
    "T1570": ("Lateral Tool Transfer", "lateral-movement"),
    # Collection
    "T1005": ("Data from Local System", "collection"),
    "T1039": ("Data from Network Shared Drive", "collection"),
    "T1056": ("Input Capture", "collection"),
    "T1056.001": ("Keylogging", "collection"),
    "T1074": ("Data Staged", "collection"),
    "T1114": ("Email Collection", "collection"),
    # Exfiltration
    "T1020": ("Automated Exfiltration", "exfiltration"),
    "T1041": ("Exfiltration Over C2 Channel", "exfiltration"),
    "T1048": ("Exfiltration Over Alternative Protocol", "exfiltration"),
    "T1567": ("Exfiltration Over Web Service", "exfiltration"),
    # Impact
    "T1485": ("Data Destruction", "impact"),
    "T1486": ("Data Encrypted for Impact", "impact"),
    "T1490": ("Inhibit System Recovery", "impact"),
    "T1491": ("Defacement", "impact"),
    "T1498": ("Network Denial of Service", "impact"),
    "T1499": ("Endpoint Denial of Service", "impact"),
}

_TECHNIQUE_RE = re.compile(r"attack\.t(\d{4})(?:\.(\d{3}))?")
_TACTIC_RE = re.compile(r"^attack\.([a-z-]+)$")


@dataclass(frozen=True)
class MitreTechnique:
    id: str
    name: str
    tactic: str

    @property
    def is_subtechnique(self) -> bool:
        return "." in self.id


@dataclass(frozen=True)
class MitreTactic:
    id: str
    name: str
    description: str


def _unique(items: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


class MitreMapper:
    """Derives ATT&CK techniques and tactics from Sigma `attack.*` tags."""

    def extract_techniques(self, tags: Optional[Iterable[str]]) -> List[str]:
        techniques: List[str] = []
        for tag in tags or ():
            match = _TECHNIQUE_RE.search(str(tag).lower())
            if not match:
                continue
            if match.group(2):
                techniques.append(f"T{match.group(1)}.{match.group(2)}")
            else:
                techniques.append(f"T{match.group(1)}")
        return _unique(techniques)

    def extract_tactics(self, tags: Optional[Iterable[str]]) -> List[str]:
        """Explicit tactic tags first, then tactics implied by known techniques."""
        tags = list(tags or ())
        tactics: List[str] = []
        for tag in tags:
            match = _TACTIC_RE.match(str(tag).lower())
            if match and match.group(1) in MITRE_TACTICS:
                tactics.append(match.group(1))

        for technique_id in self.extract_techniques(tags):
            known = MITRE_TECHNIQUES.get(technique_id)
            if known:
                tactics.append(known[1])

        return _unique(tactics)

    def technique_info(self, technique_id: str) -> Optional[MitreTechnique]:
        known = MITRE_TECHNIQUES.get(technique_id)
        if not known:
            return None
        return MitreTechnique(id=technique_id, name=known[0], tactic=known[1])

    def tactic_info(self, tactic_name: str) -> Optional[MitreTactic]:
        known = MITRE_TACTICS.get(tactic_name)
        if not known:
            return None
        return MitreTactic(id=known[0], name=tactic_name, description=known[1])

    def all_tactics(self) -> List[MitreTactic]:
        return [MitreTactic(id=tid, name=name, description=desc) for name, (tid, desc) in MITRE_TACTICS.items()]

    def techniques_by_tactic(self, tactic_name: str) -> List[MitreTechnique]:
        return [
            MitreTechnique(id=tid, name=name, tactic=tactic)
            for tid, (name, tactic) in MITRE_TECHNIQUES.items()
            if tactic == tactic_name
        ]

    def parse_from_tags(self, tags: Optional[Iterable[str]]) -> Dict[str, List[str]]:
        tags = list(tags or ())
        return {
            "techniques": self.extract_techniques(tags),
            "tactics": self.extract_tactics(tags),
        }
