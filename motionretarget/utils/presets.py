# Role -> naming patterns used by the automatic bone mapper.
# Patterns are compared after bone_mapping.normalize_bone_name(), so case and
# separators do not matter here.

ROOT_ROLE = "Root"

ROOT_ROLE_PATTERNS = ["root", "reference", "armature"]

BASE_BONE_ROLES = {
    "Hips": ["hips", "pelvis", "hip"],
    "Spine": ["spine", "spine1", "spine_01"],
    "Spine1": ["spine1", "spine2", "spine_02", "chest"],
    "Spine2": ["spine2", "spine3", "spine_03", "upperchest"],
    "Neck": ["neck", "neck1"],
    "Head": ["head", "head1"],
    # Left arm
    "LeftShoulder": ["leftshoulder", "left_shoulder", "shoulder_l", "clavicle_l", "l_clavicle"],
    "LeftArm": ["leftarm", "left_arm", "upperarm_l", "arm_l", "l_upperarm"],
    "LeftForeArm": ["leftforearm", "left_forearm", "lowerarm_l", "forearm_l", "l_forearm"],
    "LeftHand": ["lefthand", "left_hand", "hand_l", "l_hand"],
    # Right arm
    "RightShoulder": ["rightshoulder", "right_shoulder", "shoulder_r", "clavicle_r", "r_clavicle"],
    "RightArm": ["rightarm", "right_arm", "upperarm_r", "arm_r", "r_upperarm"],
    "RightForeArm": ["rightforearm", "right_forearm", "lowerarm_r", "forearm_r", "r_forearm"],
    "RightHand": ["righthand", "right_hand", "hand_r", "r_hand"],
    # Left leg
    "LeftUpLeg": ["leftupleg", "left_upleg", "thigh_l", "leg_l", "l_thigh"],
    "LeftLeg": ["leftleg", "left_leg", "calf_l", "shin_l", "l_calf"],
    "LeftFoot": ["leftfoot", "left_foot", "foot_l", "l_foot"],
    "LeftToeBase": ["lefttoebase", "left_toebase", "toe_l", "l_toe"],
    # Right leg
    "RightUpLeg": ["rightupleg", "right_upleg", "thigh_r", "leg_r", "r_thigh"],
    "RightLeg": ["rightleg", "right_leg", "calf_r", "shin_r", "r_calf"],
    "RightFoot": ["rightfoot", "right_foot", "foot_r", "r_foot"],
    "RightToeBase": ["righttoebase", "right_toebase", "toe_r", "r_toe"],
}

FINGER_TOKENS = ("thumb", "index", "middle", "ring", "pinky")

FINGER_SEGMENTS = 4


def _finger_patterns(side: str, finger: str, segment: int) -> list[str]:
    s = side[0].lower()
    return [
        f"{side.lower()}hand{finger}{segment}",
        f"{side.lower()}_hand{finger}{segment}",
        f"{finger}_0{segment}_{s}",
        f"{finger}{segment}_{s}",
        f"{s}_{finger}{segment}",
        f"{finger}_{segment}_{s}",
    ]


FINGER_BONE_ROLES = {
    f"{side}Hand{finger.capitalize()}{segment}": _finger_patterns(side, finger, segment)
    for side in ("Left", "Right")
    for finger in FINGER_TOKENS
    for segment in range(1, FINGER_SEGMENTS + 1)
}

# Roles needed to straighten a rest pose into T or A.
POSE_ROLES = (
    "Hips",
    "Spine",
    "LeftUpLeg",
    "LeftFoot",
    "RightUpLeg",
    "RightFoot",
    "LeftArm",
    "LeftHand",
    "RightArm",
    "RightHand",
)

# Bone segments compared when estimating a body-proportion scale.
OPTIMAL_SCALE_ROLE_PAIRS = [
    ("Hips", "Spine"),
    ("Spine", "Neck"),
    ("Neck", "Head"),
    ("LeftArm", "LeftForeArm"),
    ("LeftForeArm", "LeftHand"),
    ("RightArm", "RightForeArm"),
    ("RightForeArm", "RightHand"),
    ("LeftUpLeg", "LeftLeg"),
    ("LeftLeg", "LeftFoot"),
    ("RightUpLeg", "RightLeg"),
    ("RightLeg", "RightFoot"),
]
