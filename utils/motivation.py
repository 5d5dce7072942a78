# motivation.py
def get_motivation_text(rep_count: int, target_reps: int = 0) -> str:
    """
    Generate encouragement based on progress towards the exercise goal.
    Cycles through predefined messages so consecutive reps read differently.
    Returns "Ready to start!" for zero reps and a completion message once the goal is met.
    """

    motivational_messages = [
        "Nice and steady!",
        "Great control, keep going!",
        "You're doing really well!",
        "Smooth movement, well done!",
        "Keep breathing, nice work!",
        "Strong rep!",
        "That's the way!",
        "Excellent form!",
    ]

    if rep_count == 0:
        return "Ready to start!"

    if target_reps and rep_count >= target_reps:
        return f"Exercise complete - {rep_count} of {target_reps} reps!"

    # Cycle through messages based on rep count to maintain variety
    message_index = (rep_count - 1) % len(motivational_messages)
    selected_message = motivational_messages[message_index]

    if target_reps:
        return f"Rep {rep_count} of {target_reps} - {selected_message}"
    return f"Rep {rep_count} - {selected_message}"
