STARTER_EXERCISES = [
    {"name": "Bench Press", "default_sets": 3, "default_reps": 8, "muscle_group": "chest", "secondary_muscles": ["triceps", "shoulders"], "aliases": ["Barbell Bench Press", "Flat Bench"]},
    {"name": "Incline Dumbbell Press", "default_sets": 3, "default_reps": 10, "muscle_group": "chest", "secondary_muscles": ["shoulders"], "aliases": ["Incline DB Press"]},
    {"name": "Push Up", "default_sets": 3, "default_reps": 15, "muscle_group": "chest", "secondary_muscles": ["triceps"], "aliases": ["Press Up"]},
    {"name": "Dips", "default_sets": 3, "default_reps": 10, "muscle_group": "triceps", "secondary_muscles": ["chest"], "aliases": ["Parallel Bar Dip"]},
    {"name": "Overhead Press", "default_sets": 3, "default_reps": 8, "muscle_group": "shoulders", "secondary_muscles": ["triceps"], "aliases": ["OHP", "Military Press"]},
    {"name": "Lateral Raise", "default_sets": 3, "default_reps": 12, "muscle_group": "shoulders", "secondary_muscles": [], "aliases": ["Dumbbell Lateral Raise"]},
    {"name": "Pull Up", "default_sets": 3, "default_reps": 8, "muscle_group": "back", "secondary_muscles": ["biceps"], "aliases": ["Pullup"]},
    {"name": "Lat Pulldown", "default_sets": 3, "default_reps": 10, "muscle_group": "back", "secondary_muscles": ["biceps"], "aliases": ["Cable Pulldown"]},
    {"name": "Barbell Row", "default_sets": 3, "default_reps": 8, "muscle_group": "back", "secondary_muscles": ["biceps"], "aliases": ["Bent Over Row"]},
    {"name": "Seated Cable Row", "default_sets": 3, "default_reps": 10, "muscle_group": "back", "secondary_muscles": ["biceps"], "aliases": []},
    {"name": "Barbell Curl", "default_sets": 3, "default_reps": 10, "muscle_group": "biceps", "secondary_muscles": [], "aliases": []},
    {"name": "Dumbbell Curl", "default_sets": 3, "default_reps": 12, "muscle_group": "biceps", "secondary_muscles": [], "aliases": []},
    {"name": "Cable Triceps Pushdown", "default_sets": 3, "default_reps": 12, "muscle_group": "triceps", "secondary_muscles": [], "aliases": ["Triceps Pushdown"]},
    {"name": "Back Squat", "default_sets": 3, "default_reps": 5, "muscle_group": "quads", "secondary_muscles": ["glutes"], "aliases": ["Barbell Squat", "Squat"]},
    {"name": "Goblet Squat", "default_sets": 3, "default_reps": 10, "muscle_group": "quads", "secondary_muscles": ["glutes"], "aliases": []},
    {"name": "Leg Press", "default_sets": 3, "default_reps": 10, "muscle_group": "quads", "secondary_muscles": ["glutes"], "aliases": []},
    {"name": "Deadlift", "default_sets": 3, "default_reps": 5, "muscle_group": "hamstrings", "secondary_muscles": ["glutes", "back"], "aliases": ["Conventional Deadlift"]},
    {"name": "Romanian Deadlift", "default_sets": 3, "default_reps": 8, "muscle_group": "hamstrings", "secondary_muscles": ["glutes"], "aliases": ["RDL"]},
    {"name": "Hip Thrust", "default_sets": 3, "default_reps": 10, "muscle_group": "glutes", "secondary_muscles": ["hamstrings"], "aliases": ["Barbell Hip Thrust"]},
    {"name": "Bulgarian Split Squat", "default_sets": 3, "default_reps": 10, "muscle_group": "quads", "secondary_muscles": ["glutes"], "aliases": ["Rear Foot Elevated Split Squat"]},
    {"name": "Leg Curl", "default_sets": 3, "default_reps": 12, "muscle_group": "hamstrings", "secondary_muscles": [], "aliases": ["Hamstring Curl"]},
    {"name": "Standing Calf Raise", "default_sets": 3, "default_reps": 15, "muscle_group": "calves", "secondary_muscles": [], "aliases": []},
    {"name": "Plank", "default_sets": 3, "default_reps": 30, "muscle_group": "core", "secondary_muscles": [], "aliases": ["Front Plank"]},
    {"name": "Hanging Knee Raise", "default_sets": 3, "default_reps": 12, "muscle_group": "core", "secondary_muscles": [], "aliases": []},
    {"name": "Rowing Machine", "default_sets": 1, "default_reps": 10, "muscle_group": "cardio", "secondary_muscles": [], "aliases": ["Erg", "Rower"]},
    {"name": "Running", "default_sets": 1, "default_reps": 20, "muscle_group": "cardio", "secondary_muscles": [], "aliases": ["Run", "Jog"]},
]
